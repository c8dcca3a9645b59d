from __future__ import annotations

import concurrent.futures
import logging
import time
from typing import Callable, List, Optional, TypeVar, Union

import numpy as np

from .errors import AcceleratorError, DetectionError, ShapeMismatch
from .model import ModelContext
from .tensor import MemoryMode, TensorBuffer


logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferenceEngine:
    """
    Runs one blocking forward pass over a READY `ModelContext`.

    The backend call runs on a dedicated worker thread so a hung accelerator turns
    into `AcceleratorError` after `timeout_s` instead of blocking forever. Pass
    `timeout_s=None` to call the backend on the caller's thread with no bound.
    """

    def __init__(self, timeout_s: Optional[float] = 10.0):
        if timeout_s is not None and timeout_s <= 0:
            raise ValueError("timeout_s must be > 0 or None")
        self.timeout_s = timeout_s
        self._executor: Optional[concurrent.futures.ThreadPoolExecutor] = None

    def _call(self, context: ModelContext, fn: Callable[[], T]) -> T:
        if self.timeout_s is None:
            return fn()
        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="npu-infer")
        future = self._executor.submit(fn)
        try:
            return future.result(timeout=self.timeout_s)
        except concurrent.futures.TimeoutError as exc:
            # The call cannot be interrupted; the context keeps it until it finishes.
            context.track_pending(future)
            raise AcceleratorError(f"Accelerator did not complete within {self.timeout_s:g}s") from exc

    def run(self, context: ModelContext, input_tensor: Union[np.ndarray, TensorBuffer]) -> List[np.ndarray]:
        """
        Returns one array per model output. The arrays are the context's output
        buffers; they stay valid until the next run or until the context is released.
        """

        with context.exclusive():
            context.require_idle()
            in_buf = context.inputs[0]
            out_bufs = context.outputs
            expected = in_buf.spec.shape

            data = input_tensor.array if isinstance(input_tensor, TensorBuffer) else np.asarray(input_tensor)
            if tuple(data.shape) != expected:
                raise ShapeMismatch(f"Input shape {tuple(data.shape)} does not match model input {expected}")

            session = context.session
            start = time.perf_counter()
            try:
                if context.memory_mode == MemoryMode.ZERO_COPY:
                    in_buf.write(data)
                    self._call(context, session.run_bound)
                else:
                    if data.dtype != in_buf.spec.dtype:
                        data = data.astype(in_buf.spec.dtype)
                    results = self._call(context, lambda: session.run([np.ascontiguousarray(data)]))
                    if len(results) != len(out_bufs):
                        raise AcceleratorError(f"Backend returned {len(results)} outputs, expected {len(out_bufs)}")
                    for buf, result in zip(out_bufs, results):
                        buf.write(np.asarray(result).reshape(buf.spec.shape))
            except DetectionError:
                raise
            except Exception as exc:
                raise AcceleratorError(f"Inference failed on {context.backend.name}: {exc}") from exc

            elapsed = time.perf_counter() - start
            logger.debug(
                "%s elapse time = %.2fms, FPS = %.2f",
                context.memory_mode.value,
                elapsed * 1000.0,
                1.0 / elapsed if elapsed > 0 else float("inf"),
            )
            return [buf.array for buf in out_bufs]

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
