from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Tuple, Union

import numpy as np

from .errors import InvalidImage
from .letterbox import LetterboxTransform, letterbox


class PixelFormat(str, Enum):
    GRAY8 = "gray8"
    RGB888 = "rgb888"
    BGR888 = "bgr888"
    RGBA8888 = "rgba8888"
    YUV420SP_NV21 = "nv21"
    YUV420SP_NV12 = "nv12"


_PACKED_CHANNELS = {
    PixelFormat.GRAY8: 1,
    PixelFormat.RGB888: 3,
    PixelFormat.BGR888: 3,
    PixelFormat.RGBA8888: 4,
}


@dataclass(frozen=True)
class ImageBuffer:
    """
    2D pixel buffer handed to the detector.

    - data: anything exposing the buffer protocol (bytes, bytearray, memoryview, np.ndarray)
    - stride: bytes per row for packed formats; None means tightly packed
    """

    width: int
    height: int
    format: PixelFormat
    data: Any
    stride: Optional[int] = None

    @classmethod
    def from_array(cls, array: np.ndarray, format: PixelFormat = PixelFormat.BGR888) -> "ImageBuffer":
        """Wrap an OpenCV-style (H, W[, C]) uint8 array."""

        if array is None or not hasattr(array, "shape") or array.ndim not in (2, 3):
            raise InvalidImage(f"Expected an (H, W[, C]) array, got {getattr(array, 'shape', None)}")
        try:
            fmt = PixelFormat(format)
        except ValueError as e:
            raise InvalidImage(f"Unsupported pixel format: {format!r}") from e
        if fmt in (PixelFormat.YUV420SP_NV21, PixelFormat.YUV420SP_NV12):
            # Semi-planar frames arrive as one (H * 3 / 2, W) plane.
            if array.ndim != 2 or array.shape[0] % 3:
                raise InvalidImage(f"Expected a (H * 3 / 2, W) {fmt.value} array, got {array.shape}")
            h, w = array.shape[0] * 2 // 3, array.shape[1]
        else:
            channels = array.shape[2] if array.ndim == 3 else 1
            if channels != _PACKED_CHANNELS[fmt]:
                raise InvalidImage(
                    f"{fmt.value} needs {_PACKED_CHANNELS[fmt]} channel(s), got an array of shape {array.shape}"
                )
            h, w = array.shape[:2]
        return cls(width=int(w), height=int(h), format=fmt, data=np.ascontiguousarray(array))

    @property
    def bytes_per_pixel(self) -> float:
        if self.format in (PixelFormat.YUV420SP_NV21, PixelFormat.YUV420SP_NV12):
            return 1.5
        return float(_PACKED_CHANNELS[self.format])


def image_to_rgb(image: ImageBuffer) -> np.ndarray:
    """
    Validate an `ImageBuffer` and return its pixels as a contiguous (H, W, 3) RGB uint8 array.
    """
    try:
        import cv2  # type: ignore
    except Exception as e:  # pragma: no cover
        raise ImportError("OpenCV is required for preprocessing. Install with `pip install opencv-python`.") from e

    try:
        fmt = PixelFormat(image.format)
    except ValueError as e:
        raise InvalidImage(f"Unsupported pixel format: {image.format!r}") from e

    w, h = int(image.width), int(image.height)
    if w <= 0 or h <= 0:
        raise InvalidImage(f"Image has zero size ({w}x{h})")
    if image.data is None:
        raise InvalidImage("Image has no pixel data")

    try:
        flat = np.frombuffer(memoryview(image.data).cast("B"), dtype=np.uint8)
    except (TypeError, ValueError) as e:
        # Non-contiguous arrays cannot be cast directly.
        flat = np.ascontiguousarray(image.data, dtype=np.uint8).reshape(-1)
        if flat.size == 0:
            raise InvalidImage("Image data is empty") from e

    if fmt in (PixelFormat.YUV420SP_NV21, PixelFormat.YUV420SP_NV12):
        if image.stride not in (None, w):
            raise InvalidImage("Strided YUV420SP images are not supported")
        required = w * h * 3 // 2
        if flat.size < required:
            raise InvalidImage(f"Image buffer too small: {flat.size} bytes < {required} for {w}x{h} {fmt.value}")
        if w % 2 or h % 2:
            raise InvalidImage(f"YUV420SP images need even dimensions, got {w}x{h}")
        yuv = flat[:required].reshape(h * 3 // 2, w)
        code = cv2.COLOR_YUV2RGB_NV21 if fmt == PixelFormat.YUV420SP_NV21 else cv2.COLOR_YUV2RGB_NV12
        return cv2.cvtColor(yuv, code)

    channels = _PACKED_CHANNELS[fmt]
    row_bytes = w * channels
    stride = row_bytes if image.stride is None else int(image.stride)
    if stride < row_bytes:
        raise InvalidImage(f"Row stride {stride} is smaller than the row size {row_bytes}")
    required = stride * (h - 1) + row_bytes
    if flat.size < required:
        raise InvalidImage(f"Image buffer too small: {flat.size} bytes < {required} for {w}x{h} {fmt.value}")

    if stride == row_bytes:
        pixels = flat[: h * row_bytes].reshape(h, w, channels)
    else:
        rows = np.lib.stride_tricks.as_strided(flat, shape=(h, row_bytes), strides=(stride, 1))
        pixels = rows.reshape(h, w, channels)

    if fmt == PixelFormat.RGB888:
        return np.ascontiguousarray(pixels)
    if fmt == PixelFormat.BGR888:
        return cv2.cvtColor(np.ascontiguousarray(pixels), cv2.COLOR_BGR2RGB)
    if fmt == PixelFormat.RGBA8888:
        return cv2.cvtColor(np.ascontiguousarray(pixels), cv2.COLOR_RGBA2RGB)
    return cv2.cvtColor(np.ascontiguousarray(pixels[:, :, 0]), cv2.COLOR_GRAY2RGB)


class Preprocessor:
    """
    Letterbox an image into the model's fixed input tensor.

    Output tensors carry a batch dimension: (1, H, W, 3) for NHWC or (1, 3, H, W) for NCHW.
    uint8 inputs keep raw pixel values (the model or accelerator normalizes), float
    inputs are scaled to [0, 1].
    """

    def __init__(self, fill_value: int = 114):
        if not 0 <= int(fill_value) <= 255:
            raise ValueError("fill_value must be in [0, 255]")
        self.fill_value = int(fill_value)

    def prepare(
        self,
        image: Union[ImageBuffer, np.ndarray],
        target_width: int,
        target_height: int,
        *,
        layout: str = "NHWC",
        dtype: Any = np.uint8,
        out: Optional[np.ndarray] = None,
    ) -> Tuple[np.ndarray, LetterboxTransform]:
        """
        Args:
            image: `ImageBuffer`, or an OpenCV-style BGR array
            target_width/target_height: model input size
            layout: "NHWC" or "NCHW"
            dtype: model input element type
            out: pre-allocated tensor to write into (zero-copy input memory)
        """

        if not isinstance(image, ImageBuffer):
            image = ImageBuffer.from_array(image)
        if layout not in ("NHWC", "NCHW"):
            raise ValueError(f"Unsupported layout {layout!r}")

        dtype = np.dtype(dtype)
        shape = (1, target_height, target_width, 3) if layout == "NHWC" else (1, 3, target_height, target_width)
        if out is not None and tuple(out.shape) != shape:
            raise ValueError(f"out has shape {tuple(out.shape)}, expected {shape}")

        rgb = image_to_rgb(image)
        color = (self.fill_value,) * 3

        # Fast path: letterbox straight into the destination tensor.
        if out is not None and layout == "NHWC" and out.dtype == np.uint8 and dtype == np.uint8:
            _, transform = letterbox(rgb, (target_width, target_height), color=color, dst=out[0])
            return out, transform

        canvas, transform = letterbox(rgb, (target_width, target_height), color=color)
        if dtype == np.uint8:
            tensor = canvas
        else:
            tensor = canvas.astype(dtype) / dtype.type(255.0)
        if layout == "NCHW":
            tensor = np.transpose(tensor, (2, 0, 1))
        tensor = tensor[None, ...]

        if out is not None:
            np.copyto(out, tensor, casting="unsafe")
            return out, transform
        return np.ascontiguousarray(tensor, dtype=dtype), transform
