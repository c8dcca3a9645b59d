from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import List, Optional, Union

import numpy as np

from . import runtime
from .backends.base import AcceleratorBackend
from .engine import InferenceEngine
from .errors import DetectionError, NotReady
from .labels import LabelTable, load_label_table
from .model import AnchorConfig, ModelContext
from .postprocess import PostProcessConfig, PostProcessor
from .preprocess import ImageBuffer, Preprocessor
from .tensor import MemoryMode
from .types import Detection


PathLike = Union[str, Path]

logger = logging.getLogger(__name__)


class Detector:
    """
    YOLOv5 detector facade: init -> detect* -> release.

    Every method reports success as a bool and never raises engine errors; the
    last failure is kept in `last_error`. Results of the last successful `detect`
    are available from `results`. Calls on one instance are serialized.

    Usage:
        with Detector("rknn") as det:
            if det.init("yolov5s-int8.rknn", "coco_80_labels_list.txt"):
                det.detect(image)
                for d in det.results:
                    print(d.label, d.score, d.as_xyxy())
    """

    def __init__(
        self,
        backend: Union[str, AcceleratorBackend] = "onnxruntime",
        *,
        post_cfg: PostProcessConfig = PostProcessConfig(),
        fill_value: int = 114,
        timeout_s: Optional[float] = 10.0,
        anchors: Optional[AnchorConfig] = None,
        drain_timeout_s: float = 30.0,
    ):
        self._backend_ref = backend
        self.drain_timeout_s = drain_timeout_s
        self.post_cfg = post_cfg
        self.anchors = anchors
        self._preprocessor = Preprocessor(fill_value=fill_value)
        self._engine = InferenceEngine(timeout_s=timeout_s)
        self._lock = threading.RLock()

        self._backend: Optional[AcceleratorBackend] = None
        self._context: Optional[ModelContext] = None
        self._labels: Optional[LabelTable] = None
        self._post: Optional[PostProcessor] = None
        self._results: List[Detection] = []
        self.last_error: Optional[BaseException] = None

    # ------------------------------------------------------------------ #
    # State
    # ------------------------------------------------------------------ #
    @property
    def is_ready(self) -> bool:
        return self._context is not None and self._context.is_ready and self._labels is not None

    @property
    def results(self) -> List[Detection]:
        return list(self._results)

    @property
    def labels(self) -> Optional[LabelTable]:
        return self._labels

    @property
    def context(self) -> Optional[ModelContext]:
        return self._context

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    def init(self, model_path: PathLike, label_list_path: PathLike, use_zero_copy: bool = False) -> bool:
        with self._lock:
            if self._context is not None or self._backend is not None:
                self._teardown()

            self.last_error = None
            try:
                labels = load_label_table(label_list_path)
                backend = runtime.acquire_backend(self._backend_ref)
            except Exception as exc:
                return self._fail("init", exc)

            self._backend = backend
            context = ModelContext(
                backend, use_zero_copy=use_zero_copy, anchors=self.anchors, drain_timeout_s=self.drain_timeout_s
            )
            try:
                model = context.load(model_path)
                post = PostProcessor(model, self.post_cfg)
            except Exception as exc:
                context.release()
                self._teardown()
                return self._fail("init", exc)

            if model.num_classes != len(labels):
                logger.warning(
                    "Model predicts %d classes but the label list has %d entries", model.num_classes, len(labels)
                )

            self._labels = labels
            self._context = context
            self._post = post
            self._results = []
            logger.info(
                "detector ready: %s with %d labels (%s)",
                Path(model_path).name,
                len(labels),
                context.memory_mode.value,
            )
            return True

    def detect(self, image: Union[ImageBuffer, np.ndarray]) -> bool:
        with self._lock:
            self._results = []
            try:
                if not self.is_ready:
                    raise NotReady("Detector is not initialized")
                assert self._context is not None and self._post is not None and self._labels is not None

                start = time.perf_counter()
                # A timed-out pass may still be reading the shared input buffer.
                self._context.require_idle()
                model = self._context.model
                in_buf = self._context.inputs[0]
                zero_copy = self._context.memory_mode == MemoryMode.ZERO_COPY

                tensor, transform = self._preprocessor.prepare(
                    image,
                    model.input_width,
                    model.input_height,
                    layout=model.input.layout or "NHWC",
                    dtype=model.input.dtype,
                    out=in_buf.array if zero_copy else None,
                )
                outputs = self._engine.run(self._context, in_buf if zero_copy else tensor)
                detections = self._post.decode(outputs, self._labels, transform)
            except Exception as exc:
                return self._fail("detect", exc)

            self._results = detections
            elapsed = time.perf_counter() - start
            logger.debug("detect: %d objects in %.2fms", len(detections), elapsed * 1000.0)
            for det in detections:
                logger.debug(
                    "%s @ (%d %d %d %d) %.3f", det.label, det.x1, det.y1, det.x2, det.y2, det.score
                )
            return True

    def release(self) -> bool:
        with self._lock:
            self._teardown()
            self._results = []
            return True

    def close(self) -> None:
        self.release()
        self._engine.close()

    def __enter__(self) -> "Detector":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    def _teardown(self) -> None:
        context, self._context = self._context, None
        backend, self._backend = self._backend, None
        self._labels = None
        self._post = None
        if context is not None:
            context.release()
        if backend is not None:
            runtime.release_backend(backend)

    def _fail(self, op: str, exc: BaseException) -> bool:
        self.last_error = exc
        if isinstance(exc, (DetectionError, OSError, ValueError)):
            logger.error("%s failed: %s", op, exc)
        else:
            logger.exception("%s failed", op)
        return False
