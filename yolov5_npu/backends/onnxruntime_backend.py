from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple, Union

import numpy as np

from ..tensor import TensorSpec
from .base import AcceleratorBackend, BackendSession


PathLike = Union[str, Path]

logger = logging.getLogger(__name__)

_ORT_DTYPES = {
    "tensor(float)": np.float32,
    "tensor(float16)": np.float16,
    "tensor(uint8)": np.uint8,
    "tensor(int8)": np.int8,
}


@dataclass(frozen=True)
class OnnxRuntimeBackendConfig:
    """
    Configuration for ONNX Runtime inference.

    - providers: ORT execution providers (e.g., ["CUDAExecutionProvider", "CPUExecutionProvider"])
    - intra_op_threads: 0 lets ORT decide
    - log_severity: ORT default logger severity (0=verbose .. 4=fatal)
    """

    providers: Optional[Sequence[str]] = None
    intra_op_threads: int = 0
    log_severity: int = 3


def _static_shape(name: str, shape: Sequence[Any], batch_dim: bool) -> Tuple[int, ...]:
    dims: List[int] = []
    for i, d in enumerate(shape):
        if isinstance(d, int) and d > 0:
            dims.append(d)
        elif i == 0 and batch_dim:
            # Symbolic batch axis; one image per run.
            dims.append(1)
        else:
            raise ValueError(f"Tensor {name!r} has a dynamic dimension {d!r} at axis {i}; export with static shapes.")
    return tuple(dims)


def _guess_layout(shape: Tuple[int, ...]) -> Optional[str]:
    if len(shape) != 4:
        return None
    if shape[1] in (1, 3) and shape[3] not in (1, 3):
        return "NCHW"
    if shape[3] in (1, 3):
        return "NHWC"
    return "NCHW"


class OnnxRuntimeSession(BackendSession):
    """
    One `InferenceSession` per model.

    Zero-copy is offered only when the session runs purely on the CPU execution
    provider: host numpy memory is then the memory the provider reads and writes,
    and it is bound once through `io_binding()`.
    """

    def __init__(self, ort: Any, model_path: Path, cfg: OnnxRuntimeBackendConfig):
        sess_opts = ort.SessionOptions()
        if cfg.intra_op_threads:
            sess_opts.intra_op_num_threads = int(cfg.intra_op_threads)
        providers = list(cfg.providers) if cfg.providers is not None else None
        self.session = ort.InferenceSession(str(model_path), sess_options=sess_opts, providers=providers)
        self._binding: Any = None

        self._inputs: List[TensorSpec] = []
        for i in self.session.get_inputs():
            shape = _static_shape(i.name, i.shape, batch_dim=True)
            self._inputs.append(
                TensorSpec(name=i.name, shape=shape, dtype=self._dtype(i.name, i.type), layout=_guess_layout(shape))
            )
        self._outputs = [
            TensorSpec(
                name=o.name,
                shape=_static_shape(o.name, o.shape, batch_dim=True),
                dtype=self._dtype(o.name, o.type),
            )
            for o in self.session.get_outputs()
        ]
        self.output_names = [o.name for o in self._outputs]

    @staticmethod
    def _dtype(name: str, ort_type: str) -> np.dtype:
        if ort_type not in _ORT_DTYPES:
            raise ValueError(f"Tensor {name!r} has unsupported element type {ort_type}")
        return np.dtype(_ORT_DTYPES[ort_type])

    @property
    def providers_in_use(self) -> Sequence[str]:
        # ORT returns providers in priority order for this session.
        return tuple(self.session.get_providers())

    def input_specs(self) -> List[TensorSpec]:
        return list(self._inputs)

    def output_specs(self) -> List[TensorSpec]:
        return list(self._outputs)

    def supports_zero_copy(self, spec: TensorSpec) -> bool:
        return tuple(self.providers_in_use) == ("CPUExecutionProvider",)

    def allocate_shared(self, spec: TensorSpec) -> np.ndarray:
        return np.zeros(spec.shape, dtype=spec.dtype)

    def bind(self, inputs: Sequence[np.ndarray], outputs: Sequence[np.ndarray]) -> None:
        binding = self.session.io_binding()
        for spec, arr in zip(self._inputs, inputs):
            binding.bind_input(
                name=spec.name,
                device_type="cpu",
                device_id=0,
                element_type=arr.dtype.type,
                shape=tuple(arr.shape),
                buffer_ptr=arr.ctypes.data,
            )
        for spec, arr in zip(self._outputs, outputs):
            binding.bind_output(
                name=spec.name,
                device_type="cpu",
                device_id=0,
                element_type=arr.dtype.type,
                shape=tuple(arr.shape),
                buffer_ptr=arr.ctypes.data,
            )
        self._binding = binding

    def run(self, inputs: Sequence[np.ndarray]) -> List[np.ndarray]:
        feeds = {spec.name: arr for spec, arr in zip(self._inputs, inputs)}
        return list(self.session.run(self.output_names, feeds))

    def run_bound(self) -> None:
        if self._binding is None:
            raise RuntimeError("No I/O binding; call bind() first.")
        self.session.run_with_iobinding(self._binding)

    def close(self) -> None:
        # ORT frees the session when the last reference goes away.
        if self._binding is not None:
            self._binding.clear_binding_inputs()
            self._binding.clear_binding_outputs()
            self._binding = None
        self.session = None


class OnnxRuntimeBackend(AcceleratorBackend):
    """
    ONNX Runtime backend.

    Expects the YOLOv5 detect-head outputs (one raw tensor per stride), as produced
    by NPU-oriented exports, rather than the fused (1, N, 5 + C) output.
    """

    name = "onnxruntime"

    def __init__(self, cfg: OnnxRuntimeBackendConfig = OnnxRuntimeBackendConfig()):
        self.cfg = cfg
        self._ort: Any = None

    def initialize(self) -> None:
        try:
            import onnxruntime as ort  # type: ignore
        except Exception as e:  # pragma: no cover
            raise ImportError(
                "onnxruntime is required for the ONNX backend. Install it with `pip install onnxruntime` "
                "(or `onnxruntime-gpu`)."
            ) from e

        ort.set_default_logger_severity(int(self.cfg.log_severity))
        self._ort = ort
        logger.info("onnxruntime %s initialized, available providers: %s", ort.__version__, ort.get_available_providers())

    def shutdown(self) -> None:
        self._ort = None

    def open(self, model_path: PathLike) -> OnnxRuntimeSession:
        if self._ort is None:
            self.initialize()
        path = Path(model_path)
        if not path.exists():
            raise FileNotFoundError(str(path))
        return OnnxRuntimeSession(self._ort, path, self.cfg)
