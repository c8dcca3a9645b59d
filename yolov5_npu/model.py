from __future__ import annotations

import concurrent.futures
import contextlib
import json
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np

from .backends.base import AcceleratorBackend, BackendSession
from .errors import AcceleratorError, ModelLoadError, NotReady, UnsupportedZeroCopy
from .runtime import context_creation_lock
from .tensor import MemoryMode, TensorBuffer, TensorSpec


PathLike = Union[str, Path]

logger = logging.getLogger(__name__)

_SUPPORTED_INPUT_DTYPES = (np.dtype(np.uint8), np.dtype(np.float32), np.dtype(np.float16))


@dataclass(frozen=True)
class AnchorHead:
    stride: int
    anchors: Tuple[Tuple[float, float], ...]


@dataclass(frozen=True)
class AnchorConfig:
    """
    Per detection head: grid stride and anchor box sizes (w, h) in input pixels.

    Heads are listed in the same order as the model outputs.
    """

    heads: Tuple[AnchorHead, ...]

    def __post_init__(self) -> None:
        if not self.heads:
            raise ValueError("AnchorConfig needs at least one head")
        per_head = {len(h.anchors) for h in self.heads}
        if len(per_head) != 1 or 0 in per_head:
            raise ValueError("Every head must have the same, non-zero number of anchors")
        for h in self.heads:
            if h.stride <= 0:
                raise ValueError(f"stride must be > 0 (got {h.stride})")

    @property
    def anchors_per_head(self) -> int:
        return len(self.heads[0].anchors)

    @classmethod
    def from_lists(cls, strides: Sequence[int], anchors: Sequence[Sequence[float]]) -> "AnchorConfig":
        """
        Build from YOLOv5-style flat lists, e.g. strides [8, 16, 32] and
        anchors [[10, 13, 16, 30, 33, 23], ...].
        """

        if len(strides) != len(anchors):
            raise ValueError(f"{len(strides)} strides but {len(anchors)} anchor groups")
        heads = []
        for stride, flat in zip(strides, anchors):
            if len(flat) == 0 or len(flat) % 2:
                raise ValueError(f"Anchor group must hold (w, h) pairs, got {list(flat)}")
            pairs = tuple((float(flat[i]), float(flat[i + 1])) for i in range(0, len(flat), 2))
            heads.append(AnchorHead(stride=int(stride), anchors=pairs))
        return cls(heads=tuple(heads))


YOLOV5_ANCHORS = AnchorConfig.from_lists(
    strides=(8, 16, 32),
    anchors=(
        (10, 13, 16, 30, 33, 23),
        (30, 61, 62, 45, 59, 119),
        (116, 90, 156, 198, 373, 326),
    ),
)


@dataclass(frozen=True)
class ModelManifest:
    """
    Optional sidecar next to the model (`<model>.json`), for settings the model
    file itself does not carry.

        {
          "schema_version": 1,
          "strides": [8, 16, 32],
          "anchors": [[10, 13, 16, 30, 33, 23], [30, 61, 62, 45, 59, 119], [116, 90, 156, 198, 373, 326]],
          "outputs_activated": false,
          "input_layout": "NHWC"
        }
    """

    anchors: Optional[AnchorConfig] = None
    outputs_activated: Optional[bool] = None
    input_layout: Optional[str] = None


def manifest_path_for(model_path: PathLike) -> Path:
    p = Path(model_path)
    return p.with_name(p.name + ".json")


def load_model_manifest(path: Path) -> ModelManifest:
    raw = path.read_text(encoding="utf-8")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid model manifest JSON: {path}") from exc
    if not isinstance(payload, dict):
        raise ValueError("Model manifest must be a JSON object")

    allowed = {"schema_version", "strides", "anchors", "outputs_activated", "input_layout"}
    unknown = sorted(set(payload.keys()) - allowed)
    if unknown:
        raise ValueError(f"Unknown model manifest keys: {unknown}")
    if payload.get("schema_version") != 1:
        raise ValueError("model manifest schema_version must be 1")

    anchors = None
    if "anchors" in payload or "strides" in payload:
        if "anchors" not in payload or "strides" not in payload:
            raise ValueError("Model manifest must set both 'strides' and 'anchors'")
        anchors = AnchorConfig.from_lists(payload["strides"], payload["anchors"])

    activated = payload.get("outputs_activated")
    if activated is not None and not isinstance(activated, bool):
        raise ValueError("outputs_activated must be a boolean")

    layout = payload.get("input_layout")
    if layout is not None and layout not in ("NCHW", "NHWC"):
        raise ValueError("input_layout must be 'NCHW' or 'NHWC'")

    return ModelManifest(anchors=anchors, outputs_activated=activated, input_layout=layout)


@dataclass(frozen=True)
class ModelSpec:
    """
    Immutable description of a loaded model.
    """

    path: Path
    input: TensorSpec
    outputs: Tuple[TensorSpec, ...]
    anchors: AnchorConfig
    num_classes: int
    outputs_activated: bool = False

    @property
    def input_width(self) -> int:
        return self.input.width

    @property
    def input_height(self) -> int:
        return self.input.height

    @property
    def is_quantized(self) -> bool:
        return any(o.quant is not None and o.dtype.kind in "iu" for o in self.outputs)


def _head_layout(spec: TensorSpec, head: AnchorHead, inp: TensorSpec, na: int) -> Tuple[str, int]:
    """Return (layout, channels) of a detect-head output whose grid matches the input at this stride."""

    candidates = [spec.layout] if spec.layout is not None else ["NCHW", "NHWC"]
    for layout in candidates:
        if layout == "NCHW":
            channels, grid_h, grid_w = spec.shape[1], spec.shape[2], spec.shape[3]
        else:
            grid_h, grid_w, channels = spec.shape[1], spec.shape[2], spec.shape[3]
        if grid_h * head.stride == inp.height and grid_w * head.stride == inp.width and channels % na == 0:
            return layout, channels
    raise ModelLoadError(
        f"Output {spec.name!r} shape {list(spec.shape)} does not match input "
        f"{inp.width}x{inp.height} at stride {head.stride} with {na} anchors"
    )


def build_model_spec(
    path: Path,
    inputs: Sequence[TensorSpec],
    outputs: Sequence[TensorSpec],
    anchors: AnchorConfig,
    manifest: ModelManifest = ModelManifest(),
) -> ModelSpec:
    """
    Check that the declared tensors describe a YOLOv5 detector and pin down layouts.
    """

    if len(inputs) != 1:
        raise ModelLoadError(f"Expected exactly one model input, got {len(inputs)}")
    inp = inputs[0]
    if manifest.input_layout is not None:
        inp = TensorSpec(name=inp.name, shape=inp.shape, dtype=inp.dtype, layout=manifest.input_layout, quant=inp.quant)
    if len(inp.shape) != 4 or inp.shape[0] != 1:
        raise ModelLoadError(f"Model input must be 4-D with batch 1, got {list(inp.shape)}")
    if inp.layout is None:
        raise ModelLoadError(f"Cannot tell the layout of input shape {list(inp.shape)}; set input_layout")
    if inp.channels != 3:
        raise ModelLoadError(f"Model input must have 3 channels, got {inp.channels}")
    if inp.dtype not in _SUPPORTED_INPUT_DTYPES:
        raise ModelLoadError(f"Unsupported model input type {inp.dtype.name}")
    if inp.width <= 0 or inp.height <= 0:
        raise ModelLoadError(f"Invalid model input size {inp.width}x{inp.height}")

    if len(outputs) != len(anchors.heads):
        raise ModelLoadError(f"Model has {len(outputs)} outputs but {len(anchors.heads)} anchor heads are configured")

    na = anchors.anchors_per_head
    num_classes: Optional[int] = None
    pinned: List[TensorSpec] = []
    for spec, head in zip(outputs, anchors.heads):
        if len(spec.shape) != 4 or spec.shape[0] != 1:
            raise ModelLoadError(f"Output {spec.name!r} must be 4-D with batch 1, got {list(spec.shape)}")
        layout, channels = _head_layout(spec, head, inp, na)
        if channels // na <= 5:
            raise ModelLoadError(f"Output {spec.name!r} has {channels} channels, too few for {na} x (5 + classes)")
        head_classes = channels // na - 5
        if num_classes is None:
            num_classes = head_classes
        elif head_classes != num_classes:
            raise ModelLoadError(f"Output {spec.name!r} has {head_classes} classes, expected {num_classes}")

        pinned.append(TensorSpec(name=spec.name, shape=spec.shape, dtype=spec.dtype, layout=layout, quant=spec.quant))

    return ModelSpec(
        path=path,
        input=inp,
        outputs=tuple(pinned),
        anchors=anchors,
        num_classes=int(num_classes or 0),
        outputs_activated=bool(manifest.outputs_activated),
    )


class ContextState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    RELEASED = "released"


class ModelContext:
    """
    Loaded model + accelerator execution context + the tensor buffers bound to it.

    Lifecycle: UNINITIALIZED --load--> READY --release--> RELEASED. A failed load
    leaves the context UNINITIALIZED with nothing allocated. Only one forward pass
    may run at a time; callers hold `exclusive()` around execution.

    A forward pass that outlived its caller's wait is tracked as pending: new
    passes are refused until it finishes, and `release()` waits up to
    `drain_timeout_s` for it before freeing anything it may still touch.
    """

    def __init__(
        self,
        backend: AcceleratorBackend,
        *,
        use_zero_copy: bool = False,
        anchors: Optional[AnchorConfig] = None,
        drain_timeout_s: float = 30.0,
    ):
        self.backend = backend
        self.drain_timeout_s = float(drain_timeout_s)
        self.use_zero_copy = bool(use_zero_copy)
        self._anchors = anchors
        self._state = ContextState.UNINITIALIZED
        self._session: Optional[BackendSession] = None
        self._model: Optional[ModelSpec] = None
        self._inputs: List[TensorBuffer] = []
        self._outputs: List[TensorBuffer] = []
        self._exec_lock = threading.Lock()
        self._pending: Optional[concurrent.futures.Future] = None

    @property
    def state(self) -> ContextState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == ContextState.READY

    def require_ready(self) -> None:
        if self._state != ContextState.READY:
            raise NotReady(f"Model context is {self._state.value}")

    @property
    def model(self) -> ModelSpec:
        self.require_ready()
        assert self._model is not None
        return self._model

    @property
    def session(self) -> BackendSession:
        self.require_ready()
        assert self._session is not None
        return self._session

    @property
    def inputs(self) -> List[TensorBuffer]:
        self.require_ready()
        return list(self._inputs)

    @property
    def outputs(self) -> List[TensorBuffer]:
        self.require_ready()
        return list(self._outputs)

    @property
    def memory_mode(self) -> MemoryMode:
        return MemoryMode.ZERO_COPY if self.use_zero_copy else MemoryMode.COPY

    @contextlib.contextmanager
    def exclusive(self) -> Iterator[None]:
        with self._exec_lock:
            self.require_ready()
            yield

    def load(self, model_path: PathLike) -> ModelSpec:
        if self._state == ContextState.READY:
            raise ModelLoadError("Model context already holds a loaded model")
        if self._state == ContextState.RELEASED:
            raise NotReady("Model context was released; create a new one")

        path = Path(model_path)
        if not path.is_file():
            raise ModelLoadError(f"Model file not found: {path}")

        session: Optional[BackendSession] = None
        try:
            manifest = ModelManifest()
            mpath = manifest_path_for(path)
            if mpath.exists():
                manifest = load_model_manifest(mpath)
            anchors = manifest.anchors or self._anchors or YOLOV5_ANCHORS

            with context_creation_lock(self.backend):
                session = self.backend.open(path)
            self._session = session

            in_specs = session.input_specs()
            out_specs = session.output_specs()
            logger.info("model input num: %d, output num: %d", len(in_specs), len(out_specs))
            for spec in in_specs:
                logger.info("  input  %s", spec.describe())
            for spec in out_specs:
                logger.info("  output %s", spec.describe())

            model = build_model_spec(path, in_specs, out_specs, anchors, manifest)
            self._allocate(session, model)
        except Exception as exc:
            self._discard()
            if isinstance(exc, ModelLoadError):
                raise
            raise ModelLoadError(f"Failed to load model {path}: {exc}") from exc

        self._model = model
        self._state = ContextState.READY
        logger.info(
            "model %s ready: input %dx%d %s %s, %d classes, %s",
            path.name,
            model.input_width,
            model.input_height,
            model.input.layout,
            model.input.dtype.name,
            model.num_classes,
            "quantized" if model.is_quantized else "float",
        )
        return model

    def _allocate(self, session: BackendSession, model: ModelSpec) -> None:
        if not self.use_zero_copy:
            self._inputs = [TensorBuffer.allocate(model.input)]
            self._outputs = [TensorBuffer.allocate(spec) for spec in model.outputs]
            return

        specs = [model.input, *model.outputs]
        unsupported = [s.name for s in specs if not session.supports_zero_copy(s)]
        if unsupported:
            raise UnsupportedZeroCopy(f"Backend {self.backend.name!r} cannot map tensors {unsupported} to shared memory")

        for spec in specs:
            buf = TensorBuffer(spec, MemoryMode.ZERO_COPY, session.allocate_shared(spec))
            (self._inputs if spec is model.input else self._outputs).append(buf)
        session.bind([b.array for b in self._inputs], [b.array for b in self._outputs])

    def track_pending(self, future: concurrent.futures.Future) -> None:
        """Record a forward pass still running on the accelerator after its caller gave up."""

        self._pending = future

    def require_idle(self) -> None:
        pending = self._pending
        if pending is None:
            return
        if not pending.done():
            raise AcceleratorError("A previous forward pass timed out and is still running on the accelerator")
        self._pending = None

    def _drain_pending(self) -> bool:
        pending, self._pending = self._pending, None
        if pending is None or pending.done():
            return True
        logger.warning("Waiting up to %gs for a timed-out forward pass to finish", self.drain_timeout_s)
        done, _ = concurrent.futures.wait([pending], timeout=self.drain_timeout_s)
        if done:
            return True
        logger.error(
            "Forward pass still running after %gs; leaving the backend session and shared memory allocated",
            self.drain_timeout_s,
        )
        return False

    def _discard(self, free_backend: bool = True) -> None:
        """
        Invalidate buffers and close the session, whatever state they are in.

        With `free_backend=False` the buffers are only invalidated; shared memory
        and the session are left to the accelerator call that still uses them.
        """

        session = self._session if free_backend else None
        for buf in [*self._inputs, *self._outputs]:
            arr = buf.invalidate()
            if arr is not None and buf.mode == MemoryMode.ZERO_COPY and session is not None:
                try:
                    session.free_shared(arr)
                except Exception:
                    logger.exception("Failed to free shared memory for %s", buf.spec.name)
        self._inputs = []
        self._outputs = []

        if session is not None:
            try:
                session.close()
            except Exception:
                logger.exception("Backend session failed to close cleanly")
        self._session = None
        self._model = None

    def release(self) -> None:
        if self._state == ContextState.RELEASED:
            return
        with self._exec_lock:
            self._discard(free_backend=self._drain_pending())
            self._state = ContextState.RELEASED
        logger.debug("model context released")

    def __repr__(self) -> str:
        return f"ModelContext(backend={self.backend.name!r}, state={self._state.value}, mode={self.memory_mode.value})"
