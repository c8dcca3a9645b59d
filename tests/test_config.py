import json
import tempfile
import unittest
from pathlib import Path

from yolov5_npu.config import DetectorConfig, ModelRegistry, load_detector_config


class TestDetectorConfig(unittest.TestCase):
    def _write_config(self, payload: dict) -> Path:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        path = Path(tmpdir.name) / "detector.json"
        path.write_text(json.dumps(payload), encoding="utf-8")
        return path

    def test_load_ok(self) -> None:
        path = self._write_config(
            {
                "model": "yolov5s-int8",
                "labels": "Models/coco_80_labels_list.txt",
                "backend": "rknn",
                "use_zero_copy": True,
                "conf_threshold": 0.3,
                "iou_threshold": 0.5,
                "max_detections": 64,
                "timeout_s": None,
                "log_level": "debug",
            }
        )
        cfg = load_detector_config(path)
        self.assertIsInstance(cfg, DetectorConfig)
        self.assertEqual(cfg.model, "yolov5s-int8")
        self.assertEqual(cfg.backend, "rknn")
        self.assertTrue(cfg.use_zero_copy)
        self.assertIsNone(cfg.timeout_s)
        post = cfg.post_config()
        self.assertEqual((post.conf_threshold, post.iou_threshold, post.max_detections), (0.3, 0.5, 64))

    def test_defaults(self) -> None:
        cfg = load_detector_config(self._write_config({"model": "m.onnx", "labels": "l.txt"}))
        self.assertIsNone(cfg.backend)
        self.assertFalse(cfg.use_zero_copy)
        self.assertEqual(cfg.conf_threshold, 0.25)
        self.assertEqual(cfg.iou_threshold, 0.45)
        self.assertEqual(cfg.max_detections, 128)
        self.assertEqual(cfg.fill_value, 114)
        self.assertEqual(cfg.timeout_s, 10.0)

    def test_unknown_keys_rejected(self) -> None:
        path = self._write_config({"model": "m.onnx", "labels": "l.txt", "nms": 0.5})
        with self.assertRaises(ValueError):
            load_detector_config(path)

    def test_missing_required(self) -> None:
        with self.assertRaises(ValueError):
            load_detector_config(self._write_config({"model": "m.onnx"}))

    def test_invalid_values(self) -> None:
        for bad in (
            {"conf_threshold": 1.5},
            {"iou_threshold": "high"},
            {"max_detections": 0},
            {"max_detections": True},
            {"use_zero_copy": "yes"},
            {"fill_value": 256},
            {"timeout_s": -1},
            {"log_level": "LOUD"},
        ):
            with self.subTest(bad=bad):
                with self.assertRaises(ValueError):
                    load_detector_config(self._write_config({"model": "m.onnx", "labels": "l.txt", **bad}))

    def test_invalid_json(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        path = Path(tmpdir.name) / "detector.json"
        path.write_text("{not json", encoding="utf-8")
        with self.assertRaises(ValueError):
            load_detector_config(path)

    def test_missing_file(self) -> None:
        with self.assertRaises(FileNotFoundError):
            load_detector_config(Path(tempfile.gettempdir()) / "no_such_detector.json")


class TestModelRegistry(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.root = Path(tmpdir.name)
        (self.root / "yolov5s-int8.rknn").write_bytes(b"\x00")

    def test_default_models(self) -> None:
        reg = ModelRegistry(root=self.root)
        self.assertEqual(list(reg), ["yolov5s-fp", "yolov5s-int8"])
        self.assertEqual(reg.resolve("yolov5s-int8"), (self.root / "yolov5s-int8.rknn").resolve())

    def test_registered_but_missing_file(self) -> None:
        with self.assertRaises(FileNotFoundError):
            ModelRegistry(root=self.root).resolve("yolov5s-fp")

    def test_unknown_name(self) -> None:
        with self.assertRaises(KeyError):
            ModelRegistry(root=self.root).resolve("yolov8n")

    def test_register_and_resolve_model(self) -> None:
        (self.root / "custom.onnx").write_bytes(b"\x00")
        reg = ModelRegistry(models={}, root=self.root)
        reg.register("custom", "custom.onnx")
        self.assertIn("custom", reg)
        self.assertEqual(reg.resolve_model("custom"), (self.root / "custom.onnx").resolve())
        # Unregistered values are paths relative to the working directory, not the registry root.
        self.assertEqual(reg.resolve_model("other/model.onnx"), (Path.cwd() / "other/model.onnx").resolve())
        self.assertEqual(reg.resolve_model("./yolov5s.onnx"), (Path.cwd() / "yolov5s.onnx").resolve())
        absolute = self.root / "custom.onnx"
        self.assertEqual(reg.resolve_model(absolute), absolute)
        with self.assertRaises(ValueError):
            reg.register("", "x.onnx")


if __name__ == "__main__":
    unittest.main()
