from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np


@dataclass(frozen=True)
class LetterboxTransform:
    """
    Scale + padding applied by `letterbox()`; maps boxes between model input space
    and source image pixel space.
    """

    scale: float
    pad_left: int
    pad_top: int
    source_width: int
    source_height: int

    def to_source(self, boxes: np.ndarray) -> np.ndarray:
        """
        Map xyxy boxes (N, 4) from letterboxed space to the source image, clamped to its bounds.
        """

        out = np.array(boxes, dtype=np.float32, copy=True).reshape(-1, 4)
        out[:, [0, 2]] = (out[:, [0, 2]] - self.pad_left) / self.scale
        out[:, [1, 3]] = (out[:, [1, 3]] - self.pad_top) / self.scale

        out[:, [0, 2]] = np.clip(out[:, [0, 2]], 0, self.source_width)
        out[:, [1, 3]] = np.clip(out[:, [1, 3]], 0, self.source_height)
        return out

    def to_model(self, boxes: np.ndarray) -> np.ndarray:
        out = np.array(boxes, dtype=np.float32, copy=True).reshape(-1, 4)
        out[:, [0, 2]] = out[:, [0, 2]] * self.scale + self.pad_left
        out[:, [1, 3]] = out[:, [1, 3]] * self.scale + self.pad_top
        return out


def letterbox(
    image: np.ndarray,
    new_shape: Tuple[int, int] = (640, 640),
    color: Tuple[int, int, int] = (114, 114, 114),
    scaleup: bool = True,
    dst: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, LetterboxTransform]:
    """
    Resize keeping aspect ratio and pad to exactly `new_shape` (width, height).

    Padding is split evenly; when the remainder is odd the extra pixel goes to the
    right/bottom. If `dst` is given (H, W, C) the result is written into it in place.

    Returns:
        padded: resized + padded image (`dst` itself when provided)
        transform: scale and left/top padding used
    """
    try:
        import cv2  # type: ignore
    except Exception as e:  # pragma: no cover
        raise ImportError("OpenCV is required for letterbox(). Install with `pip install opencv-python`.") from e

    h, w = image.shape[:2]
    if isinstance(new_shape, int):
        new_shape = (new_shape, new_shape)
    new_w, new_h = new_shape

    # Scale ratio (new / old)
    r = min(new_w / w, new_h / h)
    if not scaleup:  # only scale down
        r = min(r, 1.0)

    resized_w = min(new_w, max(1, int(round(w * r))))
    resized_h = min(new_h, max(1, int(round(h * r))))
    left = (new_w - resized_w) // 2
    top = (new_h - resized_h) // 2

    if (w, h) != (resized_w, resized_h):
        image = cv2.resize(image, (resized_w, resized_h), interpolation=cv2.INTER_LINEAR)

    channels = image.shape[2] if image.ndim == 3 else 1
    if dst is None:
        dst = np.empty((new_h, new_w, channels), dtype=image.dtype)
    elif dst.shape[:2] != (new_h, new_w):
        raise ValueError(f"dst has shape {dst.shape}, expected ({new_h}, {new_w}, C)")

    dst[...] = np.asarray(color[:channels], dtype=dst.dtype)
    dst[top : top + resized_h, left : left + resized_w] = image.reshape(resized_h, resized_w, channels)

    return dst, LetterboxTransform(
        scale=float(r),
        pad_left=int(left),
        pad_top=int(top),
        source_width=int(w),
        source_height=int(h),
    )
