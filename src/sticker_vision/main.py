"""
main.py — command line entry point for the sticker calibration pipeline
=======================================================================

Sub-commands:
 - `ingest MANIFEST`: record one calibration session (images + reference
   colors + pixel regions) and run one refinement round. The run state is
   resumed from the samples/assignments files and saved back afterwards.
 - `status`: print assignment counts per state and outcome.
 - `serve`: start the review HTTP server and block until SIGINT/SIGTERM;
   decisions made through it are saved on shutdown.
 - `predict IMAGE`: print `{tile_id: [[color, confidence], ...]}` for a live
   image, using only Finalized pixels.

Session manifest (JSON, image paths relative to the manifest):

    {"session_id": "s1",
     "images": ["a.png", "b.png"],
     "references": [{"U1": "red", ...}, {"U1": "blue", ...}],
     "mapping": {"1034": ["U1", "U2"], ...}}

Debug logging is opt-in (`--debug`).

------------------------------------------------------------------

Copyright (c) 2025 Facundo Gauna & Ulises Carnevale. MIT License.
"""

from __future__ import annotations

import argparse
import atexit
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import cv2
import numpy as np

from sticker_vision.app_types import CalibrationSession
from sticker_vision.color_correction import compose, gray_world, white_balance_from_pixels
from sticker_vision.config import ASSIGNMENTS_PATH, SAMPLES_PATH, load_config
from sticker_vision.errors import StickerVisionError
from sticker_vision.pipeline import CalibrationPipeline

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger("main")


def create_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="sticker-vision",
        description="Sticker pixel calibration and color prediction",
        allow_abbrev=False,
    )
    p.add_argument("--debug", action="store_true", help="Enable verbose logging.")
    p.add_argument("--config", type=Path, default=None, help="JSON file overriding the default configuration.")
    p.add_argument("--samples", type=Path, default=SAMPLES_PATH, help="Calibration samples file.")
    p.add_argument("--assignments", type=Path, default=ASSIGNMENTS_PATH, help="Finalized assignments file.")

    sub = p.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Record a calibration session and refine assignments.")
    ingest.add_argument("manifest", type=Path)

    sub.add_parser("status", help="Show assignment counts.")

    serve = sub.add_parser("serve", help="Run the review HTTP server.")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)

    predict = sub.add_parser("predict", help="Color confidences per tile for an image.")
    predict.add_argument("image", type=Path)
    predict.add_argument("--gray-world", action="store_true", help="Apply gray-world white balance.")
    predict.add_argument("--white-ref", default=None,
                         help="Comma separated pixel ids of a neutral reference patch used for white balance.")

    return p


def _install_signal_handlers(shutdown_callable):
    """SIGINT / SIGTERM -> run `shutdown_callable` and exit cleanly."""
    def _handler(signum, frame):
        logger.info("Received signal %s, initiating shutdown...", signum)
        try:
            shutdown_callable()
        except Exception as e:
            logger.exception("Error during shutdown handler: %s", e)
        raise SystemExit(0)

    for sig_name in ("SIGINT", "SIGTERM"):
        if hasattr(signal, sig_name):
            signal.signal(getattr(signal, sig_name), _handler)


def read_image(path: Path) -> np.ndarray:
    image = cv2.imread(str(path), cv2.IMREAD_COLOR)
    if image is None:
        raise FileNotFoundError(f"Could not read image {path}")
    return image


def load_manifest(path: Path):
    """Manifest file -> (CalibrationSession, images, mapping)."""
    data = json.loads(Path(path).read_text(encoding='utf-8'))
    base = Path(path).parent
    images: List[np.ndarray] = [read_image(base / name) for name in data.get("images", [])]
    session = CalibrationSession(str(data["session_id"]), tuple(data.get("references", [])))
    mapping: Dict[int, List[str]] = {int(p): list(tiles) for p, tiles in data.get("mapping", {}).items()}
    return session, images, mapping


def open_pipeline(args) -> CalibrationPipeline:
    config = load_config(args.config)
    if Path(args.samples).exists():
        return CalibrationPipeline.resume(args.samples, args.assignments, config=config)
    return CalibrationPipeline(config)


def _print_json(obj) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


def _cmd_ingest(args, pipeline: CalibrationPipeline) -> int:
    session, images, mapping = load_manifest(args.manifest)
    changed = pipeline.ingest(session, images, mapping)
    pipeline.save(args.samples, args.assignments)
    logger.info("Session %s: %d pixels updated", session.session_id, len(changed))
    _print_json(pipeline.status())
    return 0


def _cmd_status(args, pipeline: CalibrationPipeline) -> int:
    _print_json(pipeline.status())
    return 0


def _cmd_serve(args, pipeline: CalibrationPipeline) -> int:
    from sticker_vision.api import ReviewServer

    server = ReviewServer(pipeline, host=args.host, port=args.port)
    stop = threading.Event()

    def _shutdown_safely():
        if stop.is_set():
            return
        stop.set()
        try:
            server.shutdown()
        finally:
            pipeline.save(args.samples, args.assignments)

    atexit.register(_shutdown_safely)
    _install_signal_handlers(_shutdown_safely)

    server.start()
    if not server.wait_ready(timeout=5.0):
        logger.error("Review server failed to start on %s:%s", server.host, server.port)
        return 1
    try:
        while not stop.wait(0.5):
            pass
    except SystemExit:
        logger.info("Shutdown requested (SystemExit).")
    finally:
        _shutdown_safely()
    return 0


def _cmd_predict(args, pipeline: CalibrationPipeline) -> int:
    image = read_image(args.image)
    correction = compose(
        gray_world(image, pipeline.config.colorspace) if args.gray_world else None,
        white_balance_from_pixels(image, [int(p) for p in args.white_ref.split(",")], pipeline.config.colorspace)
        if args.white_ref else None,
    )
    vectors = pipeline.predict_vectors(image, correction)
    if not vectors:
        logger.warning("No finalized pixels yet; nothing to predict")
    _print_json({tile: [[label, conf] for label, conf in pairs] for tile, pairs in vectors.items()})
    return 0


COMMANDS = {
    "ingest": _cmd_ingest,
    "status": _cmd_status,
    "serve": _cmd_serve,
    "predict": _cmd_predict,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Main entry point.

    Supports direct CLI invocation or programmatic use via:
        main(["status"])

    Returns integer exit code.
    """
    args = create_arg_parser().parse_args(argv)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Debug mode enabled.")

    try:
        pipeline = open_pipeline(args)
    except (OSError, ValueError, StickerVisionError) as e:
        logger.error("Failed to load calibration state: %s", e)
        return 3

    try:
        return COMMANDS[args.command](args, pipeline)
    except StickerVisionError as e:
        logger.error("%s", e)
        return 2
    except (OSError, ValueError, KeyError) as e:
        logger.error("Bad input: %s", e)
        return 2


if __name__ == "__main__":
    sys.exit(main())
