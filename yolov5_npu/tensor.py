from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Tuple

import numpy as np

from .errors import NotReady, ShapeMismatch


@dataclass(frozen=True)
class QuantParams:
    """
    Affine asymmetric quantization: real = (q - zero_point) * scale.
    """

    zero_point: int
    scale: float


@dataclass(frozen=True)
class TensorSpec:
    """
    Declared shape/type of one model input or output.

    - layout: "NCHW" / "NHWC" for image-like tensors, None when unknown
    - quant: set for quantized tensors only
    """

    name: str
    shape: Tuple[int, ...]
    dtype: np.dtype
    layout: Optional[str] = None
    quant: Optional[QuantParams] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "shape", tuple(int(d) for d in self.shape))
        object.__setattr__(self, "dtype", np.dtype(self.dtype))
        if self.layout is not None and self.layout not in ("NCHW", "NHWC"):
            raise ValueError(f"Unsupported layout {self.layout!r} (expected NCHW or NHWC)")

    @property
    def num_elements(self) -> int:
        return int(np.prod(self.shape, dtype=np.int64)) if self.shape else 0

    @property
    def nbytes(self) -> int:
        return self.num_elements * self.dtype.itemsize

    @property
    def height(self) -> int:
        return self.shape[2] if self.layout == "NCHW" else self.shape[1]

    @property
    def width(self) -> int:
        return self.shape[3] if self.layout == "NCHW" else self.shape[2]

    @property
    def channels(self) -> int:
        return self.shape[1] if self.layout == "NCHW" else self.shape[3]

    def describe(self) -> str:
        quant = f", zp={self.quant.zero_point}, scale={self.quant.scale:g}" if self.quant else ""
        return f"name={self.name}, shape={list(self.shape)}, dtype={self.dtype.name}, fmt={self.layout}{quant}"


class MemoryMode(str, Enum):
    COPY = "copy"
    ZERO_COPY = "zero_copy"


class TensorBuffer:
    """
    Accelerator-addressable tensor memory owned by a `ModelContext`.

    In COPY mode the array is plain host memory handed to the backend on each run.
    In ZERO_COPY mode it was allocated by the backend in shared memory and bound to
    the execution context once, so writes are seen by the accelerator directly.

    Once invalidated (context released) every access raises `NotReady`.
    """

    def __init__(self, spec: TensorSpec, mode: MemoryMode, array: np.ndarray):
        if tuple(array.shape) != spec.shape:
            raise ShapeMismatch(f"{spec.name}: array shape {array.shape} != declared {spec.shape}")
        self.spec = spec
        self.mode = mode
        self._array: Optional[np.ndarray] = array

    @classmethod
    def allocate(cls, spec: TensorSpec) -> "TensorBuffer":
        return cls(spec, MemoryMode.COPY, np.zeros(spec.shape, dtype=spec.dtype))

    @property
    def valid(self) -> bool:
        return self._array is not None

    @property
    def array(self) -> np.ndarray:
        if self._array is None:
            raise NotReady(f"Tensor buffer {self.spec.name!r} was invalidated")
        return self._array

    def write(self, data: Any) -> None:
        dst = self.array
        src = np.asarray(data)
        if tuple(src.shape) != tuple(dst.shape):
            raise ShapeMismatch(f"{self.spec.name}: expected shape {tuple(dst.shape)}, got {tuple(src.shape)}")
        if src is dst:
            return
        np.copyto(dst, src, casting="unsafe")

    def invalidate(self) -> Optional[np.ndarray]:
        """Drop the backing array and return it so the owner can free it."""

        arr, self._array = self._array, None
        return arr

    def __repr__(self) -> str:
        state = "valid" if self.valid else "invalid"
        return f"TensorBuffer({self.spec.name!r}, {list(self.spec.shape)}, {self.spec.dtype.name}, {self.mode.value}, {state})"


def dequantize(array: np.ndarray, quant: Optional[QuantParams]) -> np.ndarray:
    if quant is None:
        return np.asarray(array, dtype=np.float32)
    return (np.asarray(array, dtype=np.float32) - float(quant.zero_point)) * np.float32(quant.scale)
