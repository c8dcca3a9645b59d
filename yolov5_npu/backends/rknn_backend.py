from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Sequence, Tuple, Union

import numpy as np

from ..tensor import TensorSpec
from .base import AcceleratorBackend, BackendSession


PathLike = Union[str, Path]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RknnBackendConfig:
    """
    Configuration for Rockchip NPU inference through `rknnlite`.

    - input_shape: NHWC input of the converted model; RKNNLite does not report it
    - core_mask: NPU core selection, "auto", "0", "1", "2", "0_1" or "0_1_2"
    """

    input_shape: Tuple[int, int, int, int] = (1, 640, 640, 3)
    core_mask: str = "auto"


_CORE_MASKS = {
    "auto": "NPU_CORE_AUTO",
    "0": "NPU_CORE_0",
    "1": "NPU_CORE_1",
    "2": "NPU_CORE_2",
    "0_1": "NPU_CORE_0_1",
    "0_1_2": "NPU_CORE_0_1_2",
}


class RknnSession(BackendSession):
    """
    RKNNLite runtime for one `.rknn` model.

    The input is fed as uint8 NHWC so normalization runs on the NPU. Output specs are
    discovered with one warm-up pass at load time. The Python runtime has no
    I/O-memory API, so zero-copy is never supported.
    """

    def __init__(self, rknn_cls: Any, model_path: Path, cfg: RknnBackendConfig):
        self._rknn = rknn_cls(verbose=False)
        ret = self._rknn.load_rknn(str(model_path))
        if ret != 0:
            self._rknn.release()
            raise RuntimeError(f"load_rknn failed for {model_path} (ret={ret})")

        core_mask = getattr(rknn_cls, _CORE_MASKS.get(cfg.core_mask, ""), None)
        if core_mask is None:
            self._rknn.release()
            raise ValueError(f"Unknown core_mask {cfg.core_mask!r}. Expected one of {sorted(_CORE_MASKS)}")
        ret = self._rknn.init_runtime(core_mask=core_mask)
        if ret != 0:
            self._rknn.release()
            raise RuntimeError(f"init_runtime failed (ret={ret})")

        self._input = TensorSpec(name="input0", shape=cfg.input_shape, dtype=np.uint8, layout="NHWC")
        try:
            outputs = self.run([np.zeros(self._input.shape, dtype=np.uint8)])
        except Exception:
            self._rknn.release()
            raise
        self._outputs = [
            TensorSpec(name=f"output{i}", shape=tuple(o.shape), dtype=o.dtype) for i, o in enumerate(outputs)
        ]

    def input_specs(self) -> List[TensorSpec]:
        return [self._input]

    def output_specs(self) -> List[TensorSpec]:
        return list(self._outputs)

    def run(self, inputs: Sequence[np.ndarray]) -> List[np.ndarray]:
        outputs = self._rknn.inference(inputs=list(inputs), data_format=["nhwc"] * len(inputs))
        if outputs is None:
            raise RuntimeError("rknn inference returned no outputs")
        return [np.asarray(o) for o in outputs]

    def close(self) -> None:
        if self._rknn is not None:
            self._rknn.release()
            self._rknn = None


class RknnBackend(AcceleratorBackend):
    name = "rknn"
    concurrent_contexts = False

    def __init__(self, cfg: RknnBackendConfig = RknnBackendConfig()):
        self.cfg = cfg
        self._rknn_cls: Any = None

    def initialize(self) -> None:
        try:
            from rknnlite.api import RKNNLite  # type: ignore
        except Exception as e:  # pragma: no cover
            raise ImportError(
                "rknnlite is required for the RKNN backend. Install it with `pip install rknn-toolkit-lite2` "
                "on the target board."
            ) from e
        self._rknn_cls = RKNNLite

    def shutdown(self) -> None:
        self._rknn_cls = None

    def open(self, model_path: PathLike) -> RknnSession:
        if self._rknn_cls is None:
            self.initialize()
        path = Path(model_path)
        if not path.exists():
            raise FileNotFoundError(str(path))
        logger.info("Loading RKNN model %s (core_mask=%s)", path, self.cfg.core_mask)
        return RknnSession(self._rknn_cls, path, self.cfg)
