"""
Accelerator backend interface.

A backend is a process-wide driver handle (`AcceleratorBackend`) that opens one
`BackendSession` per loaded model. Sessions own the execution context and any
accelerator-shared memory they hand out.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Sequence, Union

import numpy as np

from ..tensor import TensorSpec


PathLike = Union[str, Path]


class BackendSession(ABC):
    @abstractmethod
    def input_specs(self) -> List[TensorSpec]:
        ...

    @abstractmethod
    def output_specs(self) -> List[TensorSpec]:
        ...

    def supports_zero_copy(self, spec: TensorSpec) -> bool:
        return False

    def allocate_shared(self, spec: TensorSpec) -> np.ndarray:
        """Allocate accelerator-visible memory for `spec`."""

        raise NotImplementedError(f"{type(self).__name__} has no shared memory support")

    def free_shared(self, array: np.ndarray) -> None:
        pass

    def bind(self, inputs: Sequence[np.ndarray], outputs: Sequence[np.ndarray]) -> None:
        """Bind shared buffers to the execution context (zero-copy mode)."""

        raise NotImplementedError(f"{type(self).__name__} has no shared memory support")

    @abstractmethod
    def run(self, inputs: Sequence[np.ndarray]) -> List[np.ndarray]:
        """Copy mode: feed `inputs`, block until done, return host copies of the outputs."""

    def run_bound(self) -> None:
        """Zero-copy mode: execute over the bound buffers, block until outputs are readable."""

        raise NotImplementedError(f"{type(self).__name__} has no shared memory support")

    @abstractmethod
    def close(self) -> None:
        ...


class AcceleratorBackend(ABC):
    name: str = "abstract"
    # False when the driver allows only one execution context to be created at a time.
    concurrent_contexts: bool = True

    def initialize(self) -> None:
        """Process-wide driver setup; called once by the runtime before the first session."""

    def shutdown(self) -> None:
        """Process-wide driver teardown; called once after the last session is gone."""

    @abstractmethod
    def open(self, model_path: PathLike) -> BackendSession:
        ...
