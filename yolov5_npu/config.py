from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional, Union

from .postprocess import PostProcessConfig
from .runtime import resolve_path


PathLike = Union[str, Path]

# Stock YOLOv5s conversions for Rockchip NPUs.
DEFAULT_MODELS: Dict[str, str] = {
    "yolov5s-fp": "yolov5s-fp.rknn",
    "yolov5s-int8": "yolov5s-int8.rknn",
}


class ModelRegistry:
    """
    Symbolic model name -> model file, resolved under `root`.

    Lookup validates both the name and that the file exists.
    """

    def __init__(self, models: Optional[Mapping[str, str]] = None, root: Optional[PathLike] = "auto"):
        self._models: Dict[str, str] = dict(DEFAULT_MODELS if models is None else models)
        self.root = root

    def __contains__(self, name: object) -> bool:
        return name in self._models

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._models))

    def register(self, name: str, filename: str) -> None:
        if not name or not filename:
            raise ValueError("Model name and filename must be non-empty")
        self._models[name] = filename

    def resolve(self, name: str) -> Path:
        if name not in self._models:
            raise KeyError(f"Unknown model {name!r}. Known: {sorted(self._models)}")
        path = resolve_path(self._models[name], root=self.root)
        if not path.is_file():
            raise FileNotFoundError(f"Model {name!r} not found at {path}")
        return path

    def resolve_model(self, name_or_path: PathLike) -> Path:
        """
        Accept either a registered name or a path to a model file.

        Only registered names are looked up under `root`; relative paths are taken
        from the current working directory.
        """

        if isinstance(name_or_path, str) and name_or_path in self._models:
            return self.resolve(name_or_path)
        return resolve_path(name_or_path, root=Path.cwd())


@dataclass(frozen=True)
class DetectorConfig:
    model: str
    labels: str
    backend: Optional[str] = None
    use_zero_copy: bool = False
    conf_threshold: float = 0.25
    iou_threshold: float = 0.45
    max_detections: int = 128
    fill_value: int = 114
    timeout_s: Optional[float] = 10.0
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.model:
            raise ValueError("model must not be empty")
        if not self.labels:
            raise ValueError("labels must not be empty")
        if not 0.0 <= self.conf_threshold <= 1.0:
            raise ValueError("conf_threshold must be in [0, 1]")
        if not 0.0 <= self.iou_threshold <= 1.0:
            raise ValueError("iou_threshold must be in [0, 1]")
        if self.max_detections < 1:
            raise ValueError("max_detections must be >= 1")
        if not 0 <= self.fill_value <= 255:
            raise ValueError("fill_value must be in [0, 255]")
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise ValueError("timeout_s must be > 0 or null")
        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log_level: {self.log_level}")

    def post_config(self) -> PostProcessConfig:
        return PostProcessConfig(
            conf_threshold=self.conf_threshold,
            iou_threshold=self.iou_threshold,
            max_detections=self.max_detections,
        )


def _require_str(payload: Dict[str, Any], key: str) -> str:
    if key not in payload:
        raise ValueError(f"Missing required key: {key}")
    value = payload[key]
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{key} must be a non-empty string")
    return value.strip()


def _optional_number(payload: Dict[str, Any], key: str, default: Optional[float]) -> Optional[float]:
    if key not in payload:
        return default
    value = payload[key]
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number")
    return float(value)


def _optional_int(payload: Dict[str, Any], key: str, default: int) -> int:
    if key not in payload:
        return default
    value = payload[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer")
    return int(value)


def load_detector_config(path: Path) -> DetectorConfig:
    if not path.exists():
        raise FileNotFoundError(f"Detector config not found: {path}")
    raw = path.read_text(encoding="utf-8")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid detector config JSON: {path}") from exc
    if not isinstance(payload, dict):
        raise ValueError("Detector config must be a JSON object")

    allowed = {
        "model",
        "labels",
        "backend",
        "use_zero_copy",
        "conf_threshold",
        "iou_threshold",
        "max_detections",
        "fill_value",
        "timeout_s",
        "log_level",
    }
    unknown = sorted(set(payload.keys()) - allowed)
    if unknown:
        raise ValueError(f"Unknown detector config keys: {unknown}")

    backend = payload.get("backend")
    if backend is not None and (not isinstance(backend, str) or not backend.strip()):
        raise ValueError("backend must be a non-empty string or null")
    use_zero_copy = payload.get("use_zero_copy", False)
    if not isinstance(use_zero_copy, bool):
        raise ValueError("use_zero_copy must be a boolean")
    log_level = payload.get("log_level", "INFO")
    if not isinstance(log_level, str):
        raise ValueError("log_level must be a string")

    return DetectorConfig(
        model=_require_str(payload, "model"),
        labels=_require_str(payload, "labels"),
        backend=backend.strip() if backend else None,
        use_zero_copy=use_zero_copy,
        conf_threshold=float(_optional_number(payload, "conf_threshold", 0.25)),
        iou_threshold=float(_optional_number(payload, "iou_threshold", 0.45)),
        max_detections=_optional_int(payload, "max_detections", 128),
        fill_value=_optional_int(payload, "fill_value", 114),
        timeout_s=_optional_number(payload, "timeout_s", 10.0),
        log_level=log_level,
    )
