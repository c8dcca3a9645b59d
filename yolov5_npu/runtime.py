"""
Process-wide accelerator runtime.

Drivers are initialized explicitly on first use and torn down when the last user
releases them, instead of as a side effect of importing a module.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional, Sequence, Union

from .backends.base import AcceleratorBackend


PathLike = Union[str, Path]
BackendFactory = Callable[[], AcceleratorBackend]

logger = logging.getLogger(__name__)

_lock = threading.RLock()
_creation_lock = threading.Lock()
_factories: Dict[str, BackendFactory] = {}
_instances: Dict[str, AcceleratorBackend] = {}
_refcounts: Dict[int, int] = {}
_acquired: Dict[int, AcceleratorBackend] = {}


def find_project_root(
    start: Optional[PathLike] = None,
    markers: Sequence[str] = ("pyproject.toml", "setup.py", ".git", "requirements.txt"),
) -> Path:
    """
    Best-effort project root discovery, used to resolve relative model paths.
    """

    p = Path(start) if start is not None else Path.cwd()
    p = p.resolve()

    # If a file is provided, start from its directory.
    if p.is_file():
        p = p.parent

    for parent in (p, *p.parents):
        for m in markers:
            if (parent / m).exists():
                return parent
    return p


def resolve_path(path: PathLike, root: Optional[PathLike] = "auto") -> Path:
    """
    Resolve `path` to an absolute Path.

    - Absolute paths are returned as-is.
    - Relative paths are resolved against:
      - `root` if provided
      - project root (auto) otherwise
    """

    p = Path(path)
    if p.is_absolute():
        return p

    if root == "auto" or root is None:
        base = find_project_root()
    else:
        base = Path(root).resolve()

    return (base / p).resolve()


def backend_for_path(model_path: PathLike) -> str:
    """Infer the backend name from a model file extension."""

    suffix = Path(model_path).suffix.lower()
    if suffix == ".onnx":
        return "onnxruntime"
    if suffix == ".rknn":
        return "rknn"
    raise ValueError(f"Could not infer backend from extension '{suffix}'. Pass backend=... explicitly.")


def register_backend(name: str, factory: BackendFactory) -> None:
    with _lock:
        if name.lower() in _instances:
            raise RuntimeError(f"Backend {name!r} is in use and cannot be re-registered")
        _factories[name.lower()] = factory


def registered_backends() -> Sequence[str]:
    with _lock:
        return tuple(sorted(_factories))


def acquire_backend(backend: Union[str, AcceleratorBackend]) -> AcceleratorBackend:
    """
    Return an initialized backend and take a reference on it.

    Named backends are shared process-wide; instances passed in directly are
    initialized on their first acquire.
    """

    with _lock:
        if isinstance(backend, str):
            key = backend.lower()
            instance = _instances.get(key)
            if instance is None:
                if key not in _factories:
                    raise ValueError(f"Unsupported backend: {backend!r}. Registered: {sorted(_factories)}")
                instance = _factories[key]()
                _instances[key] = instance
        else:
            instance = backend

        count = _refcounts.get(id(instance), 0)
        if count == 0:
            try:
                instance.initialize()
            except Exception:
                if isinstance(backend, str):
                    _instances.pop(backend.lower(), None)
                raise
            logger.debug("Accelerator backend %s initialized", instance.name)
        _refcounts[id(instance)] = count + 1
        _acquired[id(instance)] = instance
        return instance


def release_backend(backend: AcceleratorBackend) -> None:
    """Drop one reference; the last one shuts the driver down."""

    with _lock:
        count = _refcounts.get(id(backend), 0)
        if count == 0:
            return
        if count > 1:
            _refcounts[id(backend)] = count - 1
            return

        del _refcounts[id(backend)]
        _acquired.pop(id(backend), None)
        for key, inst in list(_instances.items()):
            if inst is backend:
                del _instances[key]
        try:
            backend.shutdown()
        except Exception:
            logger.exception("Accelerator backend %s failed to shut down cleanly", backend.name)
        else:
            logger.debug("Accelerator backend %s shut down", backend.name)


def backend_refcount(backend: AcceleratorBackend) -> int:
    with _lock:
        return _refcounts.get(id(backend), 0)


def shutdown_all() -> None:
    """Tear down every live backend regardless of outstanding references."""

    with _lock:
        for key, backend in list(_acquired.items()):
            _refcounts[key] = 1
            release_backend(backend)
        _instances.clear()


@contextlib.contextmanager
def context_creation_lock(backend: AcceleratorBackend) -> Iterator[None]:
    """Serialize context creation for drivers that cannot create contexts concurrently."""

    if backend.concurrent_contexts:
        yield
        return
    with _creation_lock:
        yield


def _onnxruntime_factory() -> AcceleratorBackend:
    from .backends.onnxruntime_backend import OnnxRuntimeBackend

    return OnnxRuntimeBackend()


def _rknn_factory() -> AcceleratorBackend:
    from .backends.rknn_backend import RknnBackend

    return RknnBackend()


register_backend("onnxruntime", _onnxruntime_factory)
register_backend("rknn", _rknn_factory)
