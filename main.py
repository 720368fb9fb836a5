#!/usr/bin/env python3
"""
RGBD Generator

Converts images, videos or a live camera into side-by-side colour + depth
frames for light-field displays.

Usage:
    python main.py image PATH [--save]
    python main.py video PATH [--loop] [--record]
    python main.py camera [--index N] [--record]

Keyboard Controls:
    S     - Save a screenshot of the current RGBD frame
    Q     - Quit
"""

from __future__ import annotations

import argparse
import dataclasses
import sys
import time
from pathlib import Path
from typing import Optional

import cv2
import numpy as np
from loguru import logger

from rgbdgen.capture.video_capture import FrameSource, open_source
from rgbdgen.config import PRESETS, PipelineConfig, load_config
from rgbdgen.core.contracts import SourceMode
from rgbdgen.core.errors import RGBDError
from rgbdgen.pipeline.asset_handler import AssetHandler
from rgbdgen.pipeline.orchestrator import DepthGenerator


# ============================================================
# LOGGING CONFIGURATION
# ============================================================

def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """Configure logging."""
    logger.remove()  # Remove default handler

    # Console output with colors
    logger.add(
        sys.stderr,
        level=log_level,
        format="<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{module}</cyan>:<cyan>{line}</cyan> | <level>{message}</level>",
        colorize=True,
    )

    # File output
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level="DEBUG",
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {module}:{line} | {message}",
            rotation="10 MB",
            retention="7 days",
        )


# ============================================================
# OUTPUT RENDERER
# ============================================================

class OutputRenderer:
    """Shows RGBD frames in an OpenCV window."""

    def __init__(self, window_name: str = "RGBD Generator", max_width: int = 1920):
        self.window_name = window_name
        self.max_width = max_width
        cv2.namedWindow(self.window_name, cv2.WINDOW_NORMAL)

    def render(self, frame: np.ndarray, fps: float = 0, latency_ms: float = 0, recording: bool = False):
        """Render an RGBA frame with a small status overlay."""
        display = cv2.cvtColor(frame, cv2.COLOR_RGBA2BGR)
        h, w = display.shape[:2]
        if w > self.max_width:
            scale = self.max_width / w
            display = cv2.resize(display, (self.max_width, int(h * scale)), interpolation=cv2.INTER_AREA)

        cv2.putText(display, f"FPS: {fps:.1f}  Latency: {latency_ms:.1f}ms", (20, 35),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.6, (0, 255, 0), 1)
        if recording:
            cv2.circle(display, (display.shape[1] - 30, 30), 12, (0, 0, 255), -1)
        cv2.putText(display, "S:Screenshot  Q:Quit", (10, display.shape[0] - 10),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.5, (200, 200, 200), 1)
        cv2.imshow(self.window_name, display)

    def poll_key(self) -> int:
        return cv2.waitKey(1) & 0xFF

    def close(self):
        """Close the renderer."""
        cv2.destroyAllWindows()


# ============================================================
# MAIN APPLICATION
# ============================================================

def build_config(args: argparse.Namespace) -> PipelineConfig:
    """Settings file overlaid with command-line flags."""
    config = load_config(args.config)
    overrides = {}
    if args.model:
        overrides["model_path"] = args.model
    if args.size:
        overrides["inference_size"] = args.size
    if args.device:
        overrides["device"] = args.device
    if args.swap:
        overrides["channel_swap"] = True
    if args.preset:
        overrides["preset"] = args.preset
    if args.autofocus:
        overrides["autofocus"] = dataclasses.replace(config.autofocus, enabled=True)
    return dataclasses.replace(config, **overrides) if overrides else config


def run_image(handler: AssetHandler, path: str, renderer: Optional[OutputRenderer]):
    output = handler.process_image(path)
    stats = handler.generator.last_stats
    logger.info(f"{Path(path).name}: {output.shape[1]}x{output.shape[0]} in {stats.total_ms:.1f}ms")
    if renderer is None:
        return
    renderer.render(output, latency_ms=stats.total_ms)
    while True:
        key = cv2.waitKey(50) & 0xFF
        if key == ord('q'):
            break
        if key == ord('s'):
            handler.save_screenshot()


def run_stream(handler: AssetHandler, source: FrameSource, mode: SourceMode,
               renderer: Optional[OutputRenderer], record: bool):
    if not source.start():
        logger.error("Failed to start frame source")
        return

    handler.set_mode(SourceMode.VIDEO_RECORD if record and mode is SourceMode.VIDEO else mode)
    if record:
        handler.start_recording(source.width, source.height, source.fps)

    frame_count = 0
    start_time = time.time()
    try:
        while source.is_running or source.slot.peek() is not None:
            frame = source.pop_frame()
            if frame is None:
                time.sleep(0.001)
                continue

            output = handler.process_frame(frame)
            frame_count += 1

            if renderer is not None:
                elapsed = time.time() - start_time
                fps = frame_count / elapsed if elapsed > 0 else 0
                renderer.render(output, fps=fps, latency_ms=handler.generator.last_stats.total_ms,
                                recording=handler.is_recording)
                key = renderer.poll_key()
                if key == ord('q'):
                    break
                if key == ord('s'):
                    handler.save_screenshot()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        source.stop()
        handler.stop_recording()
        gen = handler.generator
        logger.info(f"Processed {frame_count} frames, average {gen.average_latency_ms:.1f}ms ({gen.fps:.1f} fps)")


def run(args: argparse.Namespace) -> int:
    try:
        config = build_config(args)
    except RGBDError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    renderer = None if args.headless else OutputRenderer()
    try:
        with DepthGenerator(config) as generator:
            handler = AssetHandler(
                generator,
                sizes=config.inference_sizes,
                output_dir=config.output_dir,
                save_outputs=getattr(args, "save", False),
            )
            if args.command == "image":
                run_image(handler, args.path, renderer)
            elif args.command == "video":
                source = open_source("video", args.path, loop=args.loop)
                run_stream(handler, source, SourceMode.VIDEO, renderer, args.record)
            else:
                source = open_source("camera", camera_index=args.index)
                run_stream(handler, source, SourceMode.CAMERA, renderer, args.record)
            handler.close()
    except RGBDError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    finally:
        if renderer is not None:
            renderer.close()
    return 0


# ============================================================
# ENTRY POINT
# ============================================================

def parse_args(argv=None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="RGBD Generator - side-by-side colour + depth for light-field displays",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument("--config", "-c", type=str, default=None,
                        help="Path to settings file (default: config/settings.yaml)")
    parser.add_argument("--model", "-m", type=str, default=None,
                        help="Depth model (.onnx, .pt, .ts)")
    parser.add_argument("--size", type=int, default=None,
                        help="Inference resolution (floored to a multiple of 14)")
    parser.add_argument("--device", choices=["auto", "cuda", "cpu"], default=None,
                        help="Array/inference device")
    parser.add_argument("--swap", action="store_true",
                        help="Input is BGRA: swap red and blue")
    parser.add_argument("--preset", choices=list(PRESETS.keys()), default=None,
                        help="Quality preset")
    parser.add_argument("--autofocus", action="store_true",
                        help="Enable the auto-focus depth remap")
    parser.add_argument("--headless", action="store_true",
                        help="Run without display window")
    parser.add_argument("--log-level", type=str, default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level (default: INFO)")
    parser.add_argument("--log-file", type=str, default=None,
                        help="Optional log file path")

    sub = parser.add_subparsers(dest="command", required=True)

    image = sub.add_parser("image", help="Process a still image")
    image.add_argument("path", help="Image file")
    image.add_argument("--save", action="store_true", help="Save the result as PNG")

    video = sub.add_parser("video", help="Process a video file")
    video.add_argument("path", help="Video file")
    video.add_argument("--loop", action="store_true", help="Loop playback")
    video.add_argument("--record", action="store_true", help="Record RGBD output to mp4")

    camera = sub.add_parser("camera", help="Process a live camera")
    camera.add_argument("--index", type=int, default=0, help="Camera index (default: 0)")
    camera.add_argument("--record", action="store_true", help="Record RGBD output to mp4")

    return parser.parse_args(argv)


def main():
    """Main entry point."""
    args = parse_args()
    setup_logging(args.log_level, args.log_file)
    sys.exit(run(args))


if __name__ == "__main__":
    main()
