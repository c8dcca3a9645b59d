"""
YOLOv5 object detection on NPU accelerators.

Letterbox preprocessing, accelerator model lifecycle (copy or zero-copy tensor
buffers), blocking inference with a bounded wait, and YOLOv5 anchor decoding with
class-wise NMS. Core pieces depend only on NumPy and OpenCV; accelerator runtimes
are imported by their backends on first use.
"""

from .types import Detection
from .errors import (
    AcceleratorError,
    DetectionError,
    InvalidClassId,
    InvalidImage,
    ModelLoadError,
    NotReady,
    ShapeMismatch,
    UnsupportedZeroCopy,
)
from .labels import LabelTable, load_label_table
from .tensor import MemoryMode, QuantParams, TensorBuffer, TensorSpec
from .letterbox import LetterboxTransform, letterbox
from .preprocess import ImageBuffer, PixelFormat, Preprocessor
from .model import YOLOV5_ANCHORS, AnchorConfig, ContextState, ModelContext, ModelSpec
from .engine import InferenceEngine
from .nms import NMSConfig, nms, batched_nms
from .postprocess import PostProcessConfig, PostProcessor
from .detector import Detector
from .config import DetectorConfig, ModelRegistry, load_detector_config
from .runtime import acquire_backend, release_backend, register_backend, shutdown_all
from .visualize import draw_detections

__all__ = [
    "Detection",
    "AcceleratorError",
    "DetectionError",
    "InvalidClassId",
    "InvalidImage",
    "ModelLoadError",
    "NotReady",
    "ShapeMismatch",
    "UnsupportedZeroCopy",
    "LabelTable",
    "load_label_table",
    "MemoryMode",
    "QuantParams",
    "TensorBuffer",
    "TensorSpec",
    "LetterboxTransform",
    "letterbox",
    "ImageBuffer",
    "PixelFormat",
    "Preprocessor",
    "YOLOV5_ANCHORS",
    "AnchorConfig",
    "ContextState",
    "ModelContext",
    "ModelSpec",
    "InferenceEngine",
    "NMSConfig",
    "nms",
    "batched_nms",
    "PostProcessConfig",
    "PostProcessor",
    "Detector",
    "DetectorConfig",
    "ModelRegistry",
    "load_detector_config",
    "acquire_backend",
    "release_backend",
    "register_backend",
    "shutdown_all",
    "draw_detections",
]
