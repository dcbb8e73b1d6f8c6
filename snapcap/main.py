import argparse
import logging
import platform
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from PIL import Image

from .devices import list_devices
from .errors import CaptureError
from .models import CameraConfig, CaptureMode, CaptureSession, Settings
from .registry import SessionRegistry
from .snapshot import SnapshotCoordinator, summarize
from .strategy import select_strategy
from .tooling import EncoderProbe
from .utils import get_setting, load_settings, safe_name, should_stop

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Camera previews, HLS streams and snapshot bursts via ffmpeg")
    parser.add_argument("--config", type=str, default="./config.yaml",
                        help="Path to YAML config with cameras and settings (default: ./config.yaml)")
    parser.add_argument("--verbose", action="store_true", help="Log ffmpeg output and debug messages")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list-cameras", help="List available cameras and exit")

    snap = sub.add_parser("snapshot", help="Take one snapshot from every active camera")
    snap.add_argument("--output", type=str, default=None, help="Output directory (overrides config)")
    snap.add_argument("--sequential", action="store_true", help="Capture cameras one after another")
    snap.add_argument("--timeout", type=float, default=10.0, help="Per-camera timeout in seconds (default: 10)")

    for name, help_text in (("stream", "Serve HLS streams on loopback"), ("preview", "Decode raw preview frames")):
        live = sub.add_parser(name, help=help_text)
        live.add_argument("--cameras", nargs="+", default=None,
                          help="Device IDs or camera names (default: configured active cameras)")
        live.add_argument("--duration", type=float, default=None,
                          help="Run for this many seconds (default: until Ctrl+C)")
        live.add_argument("--max-sessions", type=int, default=None,
                          help="Maximum concurrent sessions (overrides config)")
        if name == "preview":
            live.add_argument("--frames-dir", type=str, default=None,
                              help="Save the latest frame of each camera here as JPEG")
    return parser


def select_cameras(settings: Settings, requested: Optional[List[str]]) -> List[CameraConfig]:
    """Configured cameras matching the requested ids or names; unknown ids become ad-hoc cameras"""
    if not requested:
        return [camera for camera in settings.cameras if camera.active]
    selected = []
    for wanted in requested:
        match = next((c for c in settings.cameras if wanted in (c.device_id, c.name)), None)
        selected.append(match if match is not None else CameraConfig(wanted, wanted))
    return selected


def cmd_list_cameras(settings: Settings, strategy) -> int:
    probe = EncoderProbe(settings.ffmpeg_path)
    print(f"Platform: {platform.system()}")
    print(f"Strategy: {strategy.platform_name} ({strategy.input_format})")
    print(probe.status_message())
    print("Scanning for available cameras...")
    devices = list_devices(strategy)
    if devices:
        print(f"Found {len(devices)} available cameras:")
        for device in devices:
            print(f"  {device.id}\t{device.display_name}")
    else:
        print("No cameras found")
    return 0


def cmd_snapshot(args, settings: Settings, strategy) -> int:
    settings.snapshot_output_directory = get_setting(args.output, settings.snapshot_output_directory, ".")
    coordinator = SnapshotCoordinator(strategy, timeout=args.timeout, parallel=not args.sequential)
    results = coordinator.capture_all(settings.cameras, settings)
    print(summarize(results))
    return 0 if results and all(result.success for result in results) else 1


def run_sessions(registry: SessionRegistry, cameras: List[CameraConfig], mode: CaptureMode,
                 duration: Optional[float] = None, frames_dir: Optional[str] = None) -> int:
    """Start sessions for cameras and keep them alive until duration elapses or Ctrl+C"""
    latest: Dict[str, Image.Image] = {}
    latest_lock = threading.Lock()

    def on_ready(session: CaptureSession):
        if session.url:
            print(f"{session.camera.name}: {session.url}")
        else:
            print(f"{session.camera.name}: preview running")

    def on_error(session: CaptureSession, error: Exception):
        print(f"{session.camera.name}: {error}")

    def on_frame(session: CaptureSession, image: Image.Image):
        with latest_lock:
            latest[session.device_id] = image

    started = 0
    for camera in cameras:
        try:
            if mode is CaptureMode.STREAM:
                registry.start_stream(camera, on_ready=on_ready, on_error=on_error)
            else:
                registry.start_preview(camera, on_frame=on_frame, on_ready=on_ready, on_error=on_error)
            started += 1
        except CaptureError as e:
            logger.error(f"could not start camera {camera.name}: {e}")

    if not started:
        logger.error("Failed to start cameras")
        return 1

    output_dir = Path(frames_dir) if frames_dir else None
    if output_dir is not None:
        output_dir.mkdir(parents=True, exist_ok=True)

    start_time = time.time()
    try:
        if duration:
            logger.info(f"Capturing for {duration} seconds...")
        else:
            logger.info("Capturing continuously. Press Ctrl+C to stop...")
        while not should_stop(start_time, duration):
            time.sleep(1)
            if output_dir is not None:
                with latest_lock:
                    frames = dict(latest)
                for device_id, image in frames.items():
                    image.save(str(output_dir / f"{safe_name(device_id)}.jpg"), "JPEG", quality=95, optimize=True)
            if not registry.live_device_ids():
                logger.error("No live sessions left")
                break
    except KeyboardInterrupt:
        logger.info("Received interrupt signal")
    finally:
        registry.shutdown_all()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s - %(levelname)s - %(message)s")

    config_path = Path(args.config) if args.config else None
    if config_path is not None and config_path.exists():
        logger.info(f"Loaded config from {config_path}")
    else:
        logger.info("Config file not found; using CLI values or defaults")
    settings = load_settings(args.config)
    settings.verbose_output = settings.verbose_output or args.verbose

    strategy = select_strategy()

    if args.command == "list-cameras":
        return cmd_list_cameras(settings, strategy)
    if args.command == "snapshot":
        return cmd_snapshot(args, settings, strategy)

    mode = CaptureMode.STREAM if args.command == "stream" else CaptureMode.PREVIEW
    max_sessions = int(get_setting(args.max_sessions, settings.max_concurrent_sessions, 4))
    registry = SessionRegistry(strategy, settings, max_concurrent=max_sessions)
    cameras = select_cameras(settings, args.cameras)
    if not cameras:
        logger.error("No cameras configured")
        return 1
    return run_sessions(registry, cameras, mode, args.duration, getattr(args, "frames_dir", None))


if __name__ == "__main__":
    raise SystemExit(main())
