"""
Accelerator backends for yolov5_npu.

Backends are kept in a separate module so core functionality (pre/post-processing)
stays lightweight and can be used without installing inference runtimes. Concrete
backends import their runtime lazily.
"""

from __future__ import annotations

from .base import AcceleratorBackend, BackendSession

__all__ = ["AcceleratorBackend", "BackendSession"]
