from __future__ import annotations

from typing import Iterable, Optional, Tuple

import numpy as np

from .labels import LabelTable
from .types import Detection


# BGR
BOX_COLOR = (255, 0, 0)
TEXT_COLOR = (0, 0, 255)


def _label_text(det: Detection, labels: Optional[LabelTable], show_score: bool) -> str:
    if det.label is not None:
        name = det.label
    elif labels is not None and labels.contains(det.class_id):
        name = labels.name(det.class_id)
    else:
        name = str(det.class_id)
    if show_score:
        return f"{name} {det.score * 100:.1f}%"
    return name


def draw_detections(
    image_bgr: np.ndarray,
    detections: Iterable[Detection],
    *,
    labels: Optional[LabelTable] = None,
    show_score: bool = True,
    box_color: Tuple[int, int, int] = BOX_COLOR,
    text_color: Tuple[int, int, int] = TEXT_COLOR,
    box_thickness: int = 3,
    font_scale: float = 0.6,
    font_thickness: int = 1,
) -> np.ndarray:
    """
    Draw boxes and "<name> <score>%" labels on an OpenCV BGR image and return a copy.

    Args:
        image_bgr: input image in BGR (H, W, 3).
        detections: detections in original image coordinates.
        labels: used for detections that carry no label of their own.
    """

    try:
        import cv2  # type: ignore
    except Exception as e:  # pragma: no cover
        raise ImportError("OpenCV is required for draw_detections(). Install with `pip install opencv-python`.") from e

    if image_bgr is None or not hasattr(image_bgr, "shape"):
        raise TypeError("image_bgr must be a NumPy array (BGR).")
    if image_bgr.ndim != 3 or image_bgr.shape[2] != 3:
        raise ValueError(f"Expected image shape (H, W, 3), got {getattr(image_bgr, 'shape', None)}")

    out = image_bgr.copy()
    h, w = out.shape[:2]

    for det in detections:
        x1, y1, x2, y2 = det.as_xyxy()
        x1i = int(np.clip(round(x1), 0, w - 1))
        y1i = int(np.clip(round(y1), 0, h - 1))
        x2i = int(np.clip(round(x2), 0, w - 1))
        y2i = int(np.clip(round(y2), 0, h - 1))

        cv2.rectangle(out, (x1i, y1i), (x2i, y2i), box_color, thickness=box_thickness)

        text = _label_text(det, labels, show_score)
        (_, th), baseline = cv2.getTextSize(text, cv2.FONT_HERSHEY_SIMPLEX, font_scale, font_thickness)
        # Above the box if it fits, else inside.
        y_text = y1i - baseline if y1i - th - baseline >= 0 else min(y1i + th, h - 1)
        cv2.putText(
            out,
            text,
            (x1i, y_text),
            cv2.FONT_HERSHEY_SIMPLEX,
            font_scale,
            text_color,
            thickness=font_thickness,
            lineType=cv2.LINE_AA,
        )

    return out
