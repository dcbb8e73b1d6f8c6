"""
One-shot snapshot bursts across several cameras.

Each active camera gets its own ffmpeg run, bounded by a timeout, optionally
in parallel. A failing camera never prevents the others from completing.
Callers must stop or pause any live session on the same device first (see
SessionRegistry.paused); this module does not check.
"""

import logging
import subprocess
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from PIL import Image

from .errors import SnapshotFailure
from .models import CameraConfig, Settings, SnapshotResult
from .utils import safe_name

logger = logging.getLogger(__name__)

SNAPSHOT_TIMEOUT = 10.0
STDERR_TAIL_CHARS = 500


def generate_filename(camera: CameraConfig, pattern: str, now: Optional[datetime] = None) -> str:
    """Fill {id} with the sanitized camera name and {timestamp} with YYYYmmdd_HHMMSS"""
    timestamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return pattern.replace("{id}", safe_name(camera.name)).replace("{timestamp}", timestamp)


def verify_image(path: Path) -> None:
    """Raise if path is missing, empty or not a decodable image"""
    if not path.is_file() or path.stat().st_size == 0:
        raise FileNotFoundError(f"no output written to {path}")
    with Image.open(path) as image:
        image.verify()


class SnapshotCoordinator:
    """Runs snapshot commands for a set of cameras"""

    def __init__(self, strategy, timeout: float = SNAPSHOT_TIMEOUT, parallel: bool = True):
        self.strategy = strategy
        self.timeout = timeout
        self.parallel = parallel

    def capture_all(self, cameras: Iterable[CameraConfig], settings: Settings) -> List[SnapshotResult]:
        active = [camera for camera in cameras if camera.active]
        if not active:
            logger.info("No active cameras to capture from.")
            return []

        output_dir = settings.output_dir
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Failed to create output directory {output_dir}: {e}")
            return [SnapshotResult(camera.device_id, False, error=f"cannot create output directory: {e}")
                    for camera in active]

        if self.parallel and len(active) > 1:
            with ThreadPoolExecutor(max_workers=len(active), thread_name_prefix="snapshot") as pool:
                results = list(pool.map(lambda camera: self.capture_one(camera, settings), active))
        else:
            results = [self.capture_one(camera, settings) for camera in active]

        logger.info(summarize(results))
        return results

    def capture_one(self, camera: CameraConfig, settings: Settings) -> SnapshotResult:
        """Capture a single snapshot; failures come back as an unsuccessful result"""
        output_path = settings.output_dir / generate_filename(camera, settings.filename_pattern)
        try:
            self._run(camera, settings, output_path)
        except SnapshotFailure as e:
            logger.error(str(e))
            return SnapshotResult(camera.device_id, False, error=e.reason)
        except Exception as e:
            # Anything else still becomes a per-camera result
            logger.exception(f"Unexpected error taking snapshot for {camera.name}")
            return SnapshotResult(camera.device_id, False, error=f"{type(e).__name__}: {e}")
        logger.info(f"Snapshot saved: {output_path}")
        return SnapshotResult(camera.device_id, True, output_path=str(output_path))

    def _run(self, camera: CameraConfig, settings: Settings, output_path: Path) -> None:
        command = self.strategy.build_snapshot_command(camera, settings, output_path)
        logger.debug(f"Snapshot command for {camera.name}: {command}")
        try:
            proc = subprocess.run(
                list(command.argv),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise SnapshotFailure(camera.name, f"capture tool not found: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise SnapshotFailure(camera.name, f"timed out after {self.timeout:.0f}s") from e
        except OSError as e:
            raise SnapshotFailure(camera.name, str(e)) from e

        stderr = proc.stderr.decode("utf-8", errors="replace")
        if settings.verbose_output:
            for line in stderr.splitlines():
                logger.info(f"[ffmpeg-{camera.name}-snapshot] {line}")
        if proc.returncode != 0:
            tail = stderr.strip()[-STDERR_TAIL_CHARS:]
            reason = f"ffmpeg exited with code {proc.returncode}"
            if tail:
                reason += f": {tail.splitlines()[-1]}"
            raise SnapshotFailure(camera.name, reason)

        try:
            verify_image(output_path)
        except (OSError, SyntaxError, ValueError) as e:
            raise SnapshotFailure(camera.name, f"unreadable output: {e}") from e


def summarize(results: List[SnapshotResult]) -> str:
    """'Captured N of M snapshots.' followed by one line per failure"""
    succeeded = sum(1 for result in results if result.success)
    lines = [f"Captured {succeeded} of {len(results)} snapshots."]
    for result in results:
        if not result.success:
            lines.append(f"  {result.device_id}: {result.error}")
    return "\n".join(lines)
