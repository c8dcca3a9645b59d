import unittest

import numpy as np

from yolov5_npu.errors import InvalidImage
from yolov5_npu.preprocess import ImageBuffer, PixelFormat, Preprocessor, image_to_rgb


def _bgr(width: int, height: int, bgr=(10, 20, 30)) -> np.ndarray:
    img = np.empty((height, width, 3), dtype=np.uint8)
    img[...] = bgr
    return img


class TestImageToRgb(unittest.TestCase):
    def test_bgr_array(self) -> None:
        rgb = image_to_rgb(ImageBuffer.from_array(_bgr(4, 2)))
        self.assertEqual(rgb.shape, (2, 4, 3))
        self.assertEqual(rgb[0, 0].tolist(), [30, 20, 10])

    def test_rgba_bytes(self) -> None:
        data = bytes([1, 2, 3, 255] * 6)
        rgb = image_to_rgb(ImageBuffer(width=3, height=2, format=PixelFormat.RGBA8888, data=data))
        self.assertEqual(rgb.shape, (2, 3, 3))
        self.assertTrue(np.all(rgb == np.array([1, 2, 3], dtype=np.uint8)))

    def test_gray(self) -> None:
        data = bytearray([50] * 9)
        rgb = image_to_rgb(ImageBuffer(width=3, height=3, format=PixelFormat.GRAY8, data=data))
        self.assertTrue(np.all(rgb == 50))

    def test_row_stride(self) -> None:
        # 2x2 RGB rows of 6 bytes padded to 8
        data = bytes([1, 2, 3, 4, 5, 6, 0, 0, 7, 8, 9, 10, 11, 12, 0, 0])
        rgb = image_to_rgb(ImageBuffer(width=2, height=2, format=PixelFormat.RGB888, data=data, stride=8))
        self.assertEqual(rgb.reshape(-1).tolist(), [1, 2, 3, 4, 5, 6, 7, 8, 9, 10, 11, 12])

    def test_last_row_may_omit_padding(self) -> None:
        data = bytes([1, 2, 3, 4, 5, 6, 0, 0, 7, 8, 9, 10, 11, 12])
        rgb = image_to_rgb(ImageBuffer(width=2, height=2, format=PixelFormat.RGB888, data=data, stride=8))
        self.assertEqual(rgb[1, 1].tolist(), [10, 11, 12])

    def test_nv21(self) -> None:
        w, h = 4, 2
        data = bytes([128] * (w * h * 3 // 2))
        rgb = image_to_rgb(ImageBuffer(width=w, height=h, format=PixelFormat.YUV420SP_NV21, data=data))
        self.assertEqual(rgb.shape, (h, w, 3))
        # neutral chroma: grey
        self.assertLessEqual(int(rgb.max()) - int(rgb.min()), 2)

    def test_zero_size(self) -> None:
        with self.assertRaises(InvalidImage):
            image_to_rgb(ImageBuffer(width=0, height=10, format=PixelFormat.RGB888, data=b""))
        with self.assertRaises(InvalidImage):
            image_to_rgb(ImageBuffer.from_array(np.zeros((0, 5, 3), dtype=np.uint8)))

    def test_buffer_too_small(self) -> None:
        with self.assertRaises(InvalidImage):
            image_to_rgb(ImageBuffer(width=10, height=10, format=PixelFormat.RGB888, data=bytes(299)))
        with self.assertRaises(InvalidImage):
            image_to_rgb(ImageBuffer(width=4, height=2, format=PixelFormat.YUV420SP_NV21, data=bytes(11)))

    def test_stride_smaller_than_row(self) -> None:
        with self.assertRaises(InvalidImage):
            image_to_rgb(ImageBuffer(width=4, height=2, format=PixelFormat.RGB888, data=bytes(64), stride=8))

    def test_odd_yuv_dimensions(self) -> None:
        with self.assertRaises(InvalidImage):
            image_to_rgb(ImageBuffer(width=3, height=2, format=PixelFormat.YUV420SP_NV12, data=bytes(64)))

    def test_unknown_format(self) -> None:
        with self.assertRaises(InvalidImage):
            image_to_rgb(ImageBuffer(width=2, height=2, format="cmyk", data=bytes(16)))

    def test_from_array_checks_channels(self) -> None:
        bgra = np.zeros((4, 4, 4), dtype=np.uint8)
        with self.assertRaises(InvalidImage):
            ImageBuffer.from_array(bgra)
        with self.assertRaises(InvalidImage):
            ImageBuffer.from_array(np.zeros((4, 4), dtype=np.uint8))
        with self.assertRaises(InvalidImage):
            ImageBuffer.from_array(np.zeros((4, 4, 3), dtype=np.uint8), PixelFormat.GRAY8)

        rgba = np.zeros((4, 4, 4), dtype=np.uint8)
        rgba[..., 0] = 200
        rgb = image_to_rgb(ImageBuffer.from_array(rgba, PixelFormat.RGBA8888))
        self.assertEqual(rgb[0, 0].tolist(), [200, 0, 0])
        gray = ImageBuffer.from_array(np.full((4, 6), 9, dtype=np.uint8), PixelFormat.GRAY8)
        self.assertEqual((gray.width, gray.height), (6, 4))

    def test_from_array_yuv_plane(self) -> None:
        frame = ImageBuffer.from_array(np.full((3, 4), 128, dtype=np.uint8), PixelFormat.YUV420SP_NV21)
        self.assertEqual((frame.width, frame.height), (4, 2))
        self.assertEqual(image_to_rgb(frame).shape, (2, 4, 3))
        with self.assertRaises(InvalidImage):
            ImageBuffer.from_array(np.zeros((4, 4), dtype=np.uint8), PixelFormat.YUV420SP_NV12)
        with self.assertRaises(InvalidImage):
            ImageBuffer.from_array(np.zeros((4, 4), dtype=np.uint8), "cmyk")

    def test_invalid_image_is_value_error(self) -> None:
        self.assertTrue(issubclass(InvalidImage, ValueError))


class TestPreprocessor(unittest.TestCase):
    def test_nhwc_uint8(self) -> None:
        tensor, t = Preprocessor().prepare(_bgr(1280, 720), 640, 640)
        self.assertEqual(tensor.shape, (1, 640, 640, 3))
        self.assertEqual(tensor.dtype, np.uint8)
        self.assertAlmostEqual(t.scale, 0.5)
        self.assertEqual((t.pad_left, t.pad_top), (0, 140))
        self.assertEqual(tensor[0, 0, 0].tolist(), [114, 114, 114])
        self.assertEqual(tensor[0, 320, 320].tolist(), [30, 20, 10])

    def test_nchw_float(self) -> None:
        tensor, _ = Preprocessor().prepare(_bgr(64, 32), 64, 64, layout="NCHW", dtype=np.float32)
        self.assertEqual(tensor.shape, (1, 3, 64, 64))
        self.assertEqual(tensor.dtype, np.float32)
        self.assertTrue(tensor.flags["C_CONTIGUOUS"])
        self.assertAlmostEqual(float(tensor[0, 0, 0, 0]), 114 / 255, places=5)
        self.assertAlmostEqual(float(tensor[0, 0, 32, 32]), 30 / 255, places=5)
        self.assertAlmostEqual(float(tensor[0, 2, 32, 32]), 10 / 255, places=5)

    def test_custom_fill(self) -> None:
        tensor, _ = Preprocessor(fill_value=0).prepare(_bgr(64, 32), 64, 64)
        self.assertEqual(tensor[0, 0, 0].tolist(), [0, 0, 0])
        with self.assertRaises(ValueError):
            Preprocessor(fill_value=300)

    def test_writes_into_out(self) -> None:
        out = np.zeros((1, 64, 64, 3), dtype=np.uint8)
        tensor, _ = Preprocessor().prepare(_bgr(64, 32), 64, 64, out=out)
        self.assertIs(tensor, out)
        self.assertEqual(out[0, 32, 32].tolist(), [30, 20, 10])
        self.assertEqual(out[0, 0, 0].tolist(), [114, 114, 114])

    def test_writes_into_out_nchw(self) -> None:
        out = np.zeros((1, 3, 64, 64), dtype=np.float32)
        tensor, _ = Preprocessor().prepare(_bgr(64, 64), 64, 64, layout="NCHW", dtype=np.float32, out=out)
        self.assertIs(tensor, out)
        self.assertAlmostEqual(float(out[0, 0, 10, 10]), 30 / 255, places=5)

    def test_out_shape_checked(self) -> None:
        with self.assertRaises(ValueError):
            Preprocessor().prepare(_bgr(64, 64), 64, 64, out=np.zeros((1, 32, 32, 3), dtype=np.uint8))

    def test_invalid_image(self) -> None:
        with self.assertRaises(InvalidImage):
            Preprocessor().prepare(ImageBuffer(width=0, height=0, format=PixelFormat.RGB888, data=b""), 64, 64)


if __name__ == "__main__":
    unittest.main()
