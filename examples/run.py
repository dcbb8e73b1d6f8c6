import argparse
import logging
import time

from snapcap import CaptureMode, SessionRegistry, SnapshotCoordinator, select_strategy
from snapcap.snapshot import summarize
from snapcap.utils import get_setting, load_settings

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Stream every active camera, then take a snapshot burst")
    parser.add_argument("--config", type=str, default="./config.yaml", help="Path to YAML config")
    parser.add_argument("--output", type=str, default=None, help="Snapshot directory")
    parser.add_argument("--duration", type=int, default=10, help="Seconds to stream before the snapshot")
    args = parser.parse_args()

    settings = load_settings(args.config)
    settings.snapshot_output_directory = get_setting(args.output, settings.snapshot_output_directory, ".")
    strategy = select_strategy()

    registry = SessionRegistry(strategy, settings)
    try:
        registry.start_all(settings.cameras, mode=CaptureMode.STREAM,
                           on_ready=lambda session: print(f"{session.camera.name}: {session.url}"))
        time.sleep(args.duration)
        # Snapshots need exclusive access to the devices
        with registry.paused():
            results = SnapshotCoordinator(strategy).capture_all(settings.cameras, settings)
        print(summarize(results))
    finally:
        registry.shutdown_all()


if __name__ == "__main__":
    main()
