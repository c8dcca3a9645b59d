from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .errors import InvalidClassId, ShapeMismatch
from .labels import LabelTable
from .letterbox import LetterboxTransform
from .model import AnchorHead, ModelSpec
from .nms import NMSConfig, batched_nms
from .tensor import TensorSpec, dequantize
from .types import Detection


logger = logging.getLogger(__name__)


@dataclass
class PostProcessConfig:
    """
    Configuration for YOLOv5 post processing.
    """

    conf_threshold: float = 0.25
    iou_threshold: float = 0.45
    max_detections: int = 128


@dataclass
class PostProcessStats:
    candidates: int = 0
    invalid_class_ids: int = 0
    kept: int = 0


def sigmoid(x: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-x))


class PostProcessor:
    """
    Decodes YOLOv5 detect-head outputs into detections.

    Each output holds, per grid cell and anchor, [tx, ty, tw, th, obj, class scores...]
    laid out as (1, A * (5 + C), H, W) or (1, H, W, A * (5 + C)).

    After the logistic function (skipped when the export already applied it):

        cx = (2 * sx - 0.5 + grid_x) * stride
        cy = (2 * sy - 0.5 + grid_y) * stride
        w  = (2 * sw) ** 2 * anchor_w
        h  = (2 * sh) ** 2 * anchor_h
        score = obj * max(class scores)
    """

    def __init__(self, model: ModelSpec, cfg: PostProcessConfig = PostProcessConfig()):
        self.model = model
        self.cfg = cfg
        self.last_stats = PostProcessStats()
        self._grids = [self._make_grid(head) for head in model.anchors.heads]

    def _make_grid(self, head: AnchorHead) -> Tuple[np.ndarray, np.ndarray]:
        h = self.model.input_height // head.stride
        w = self.model.input_width // head.stride
        gy, gx = np.meshgrid(np.arange(h, dtype=np.float32), np.arange(w, dtype=np.float32), indexing="ij")
        return gx, gy

    def decode(
        self,
        outputs: Sequence[np.ndarray],
        labels: LabelTable,
        transform: LetterboxTransform,
        conf_threshold: Optional[float] = None,
        iou_threshold: Optional[float] = None,
    ) -> List[Detection]:
        """
        Convert raw head outputs into detections in source image coordinates.

        Args:
            outputs: one array per detection head, in model output order
            labels: class names; candidates with ids outside the table are dropped
            transform: letterbox transform of the current image
            conf_threshold/iou_threshold: override the configured thresholds
        """

        conf = self.cfg.conf_threshold if conf_threshold is None else float(conf_threshold)
        iou_thr = self.cfg.iou_threshold if iou_threshold is None else float(iou_threshold)
        stats = PostProcessStats()
        self.last_stats = stats

        if len(outputs) != len(self.model.outputs):
            raise ShapeMismatch(f"Expected {len(self.model.outputs)} outputs, got {len(outputs)}")

        boxes_list, scores_list, class_list = [], [], []
        for output, spec, head, grid in zip(outputs, self.model.outputs, self.model.anchors.heads, self._grids):
            boxes, scores, class_ids = self._decode_head(output, spec, head, grid, conf)
            boxes_list.append(boxes)
            scores_list.append(scores)
            class_list.append(class_ids)

        boxes = np.concatenate(boxes_list, axis=0)
        scores = np.concatenate(scores_list, axis=0)
        class_ids = np.concatenate(class_list, axis=0)
        stats.candidates = int(scores.shape[0])
        if scores.size == 0:
            return []

        valid = np.ones(scores.shape[0], dtype=bool)
        for i, cls_id in enumerate(class_ids):
            try:
                labels.name(int(cls_id))
            except InvalidClassId:
                valid[i] = False
        stats.invalid_class_ids = int((~valid).sum())
        if stats.invalid_class_ids:
            logger.warning(
                "Dropped %d candidates with class ids outside the %d-entry label table",
                stats.invalid_class_ids,
                len(labels),
            )
            boxes, scores, class_ids = boxes[valid], scores[valid], class_ids[valid]
            if scores.size == 0:
                return []

        # Suppression runs on the clamped source-space boxes that are returned.
        boxes = transform.to_source(boxes)
        nms_cfg = NMSConfig(iou_threshold=iou_thr, max_detections=self.cfg.max_detections)
        keep = batched_nms(boxes, scores, class_ids, nms_cfg)
        boxes, scores, class_ids = boxes[keep], scores[keep], class_ids[keep]
        stats.kept = int(keep.shape[0])

        return [
            Detection(
                x1=float(x1),
                y1=float(y1),
                x2=float(x2),
                y2=float(y2),
                score=float(score),
                class_id=int(cls_id),
                label=labels.name(int(cls_id)),
            )
            for (x1, y1, x2, y2), score, cls_id in zip(boxes, scores, class_ids)
        ]

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    def _decode_head(
        self,
        output: np.ndarray,
        spec: TensorSpec,
        head: AnchorHead,
        grid: Tuple[np.ndarray, np.ndarray],
        conf_threshold: float,
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Decode one head into xyxy boxes (model input space), scores and class ids,
        keeping only candidates at or above `conf_threshold`.

        Candidates come out in anchor, row, column order.
        """

        p = np.asarray(output)
        if tuple(p.shape) != spec.shape:
            raise ShapeMismatch(f"Output {spec.name!r} has shape {tuple(p.shape)}, expected {spec.shape}")

        na = len(head.anchors)
        gx, gy = grid
        gh, gw = gx.shape
        attrs = 5 + self.model.num_classes

        p = dequantize(p, spec.quant)
        if spec.layout == "NHWC":
            p = p.reshape(gh, gw, na, attrs).transpose(2, 3, 0, 1)
        else:
            p = p.reshape(na, attrs, gh, gw)
        if not self.model.outputs_activated:
            p = sigmoid(p)

        objectness = p[:, 4]  # (A, H, W)
        class_scores = p[:, 5:]  # (A, C, H, W)
        class_ids = np.argmax(class_scores, axis=1)
        class_conf = np.take_along_axis(class_scores, class_ids[:, None], axis=1)[:, 0]
        scores = objectness * class_conf

        mask = scores >= conf_threshold
        if not mask.any():
            return np.empty((0, 4), dtype=np.float32), np.empty((0,), dtype=np.float32), np.empty((0,), dtype=np.int64)

        a_idx, row, col = np.nonzero(mask)
        anchors = np.asarray(head.anchors, dtype=np.float32)
        sx = p[a_idx, 0, row, col]
        sy = p[a_idx, 1, row, col]
        sw = p[a_idx, 2, row, col]
        sh = p[a_idx, 3, row, col]

        cx = (sx * 2.0 - 0.5 + gx[row, col]) * head.stride
        cy = (sy * 2.0 - 0.5 + gy[row, col]) * head.stride
        w = (sw * 2.0) ** 2 * anchors[a_idx, 0]
        h = (sh * 2.0) ** 2 * anchors[a_idx, 1]

        boxes = np.stack([cx - w / 2, cy - h / 2, cx + w / 2, cy + h / 2], axis=1).astype(np.float32)
        return boxes, scores[mask].astype(np.float32), class_ids[mask].astype(np.int64)
