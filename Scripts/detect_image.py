import argparse
import logging
from pathlib import Path

import cv2

from yolov5_npu import (
    Detector,
    DetectorConfig,
    ImageBuffer,
    ModelRegistry,
    PixelFormat,
    draw_detections,
    load_detector_config,
)
from yolov5_npu.logging_config import setup_logging
from yolov5_npu.runtime import backend_for_path

logger = logging.getLogger("detect_image")


def _build_config(args: argparse.Namespace) -> DetectorConfig:
    if args.config:
        return load_detector_config(Path(args.config))
    if not args.model or not args.labels:
        raise ValueError("--model and --labels are required when --config is not given")
    return DetectorConfig(
        model=args.model,
        labels=args.labels,
        backend=args.backend,
        use_zero_copy=bool(args.zero_copy),
        conf_threshold=args.conf,
        iou_threshold=args.iou,
        log_level=args.log_level,
    )


def main() -> int:
    parser = argparse.ArgumentParser(description="Run YOLOv5 detection on one image and draw the results.")
    parser.add_argument("image", help="Path to an input image.")
    parser.add_argument("--config", default=None, help="Detector config JSON (overrides the flags below).")
    parser.add_argument("--model", default=None, help="Model path (.onnx/.rknn) or a registered name (yolov5s-int8).")
    parser.add_argument(
        "--models-root", default="Models", help="Directory holding registered models (not used for plain paths)."
    )
    parser.add_argument("--labels", default=None, help="Label list, one class name per line.")
    parser.add_argument("--backend", default=None, help="Force backend: onnxruntime / rknn.")
    parser.add_argument("--zero-copy", action="store_true", help="Bind input/output tensors in shared memory.")
    parser.add_argument("--conf", type=float, default=0.25, help="Confidence threshold.")
    parser.add_argument("--iou", type=float, default=0.45, help="IoU threshold for NMS.")
    parser.add_argument("--out", default=None, help="Optional output path for the annotated image.")
    parser.add_argument("--log-level", default="INFO", help="Logging level.")
    parser.add_argument("--log-file", default=None, help="Optional log file.")
    args = parser.parse_args()

    cfg = _build_config(args)
    setup_logging(cfg.log_level, args.log_file)

    registry = ModelRegistry(root=args.models_root)
    model_path = registry.resolve_model(cfg.model)
    backend = cfg.backend or backend_for_path(model_path)

    img = cv2.imread(args.image)
    if img is None:
        raise FileNotFoundError(f"Could not read image at path: {args.image}")

    with Detector(
        backend,
        post_cfg=cfg.post_config(),
        fill_value=cfg.fill_value,
        timeout_s=cfg.timeout_s,
    ) as detector:
        if not detector.init(model_path, cfg.labels, use_zero_copy=cfg.use_zero_copy):
            logger.error("init failed: %s", detector.last_error)
            return 1

        if not detector.detect(ImageBuffer.from_array(img, PixelFormat.BGR888)):
            logger.error("detect failed: %s", detector.last_error)
            return 1

        detections = detector.results
        for det in detections:
            print(f"{det.label} @ ({det.x1:.0f} {det.y1:.0f} {det.x2:.0f} {det.y2:.0f}) {det.score:.3f}")

        if args.out:
            vis = draw_detections(img, detections, labels=detector.labels)
            ok = cv2.imwrite(args.out, vis)
            if not ok:
                raise RuntimeError(f"Failed to write output image: {args.out}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
