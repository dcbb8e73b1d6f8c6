"""
Platform-specific ffmpeg command building.

CaptureStrategy is a closed set of strategies, one per host platform. Pick one
with select_strategy() at startup and pass it to the registry and the snapshot
coordinator. All methods are pure: they only map cameras and settings to
argument vectors.
"""

import logging
import platform
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from .models import CameraConfig, CaptureMode, Settings, effective_resolution, parse_resolution

logger = logging.getLogger(__name__)

PLAYLIST_NAME = "stream.m3u8"
SEGMENT_PATTERN = "segment_%03d.ts"
STREAM_FRAMERATE = "15"
FALLBACK_FRAME_SIZE = (640, 480)


@dataclass(frozen=True)
class PixelFormat:
    name: str
    bytes_per_pixel: int
    image_mode: str


RGB24 = PixelFormat("rgb24", 3, "RGB")


@dataclass(frozen=True)
class Command:
    """An executable argument vector plus what the supervisor needs to read its output"""

    argv: Tuple[str, ...]
    mode: CaptureMode
    frame_size: Tuple[int, int] = FALLBACK_FRAME_SIZE
    pixel_format: PixelFormat = RGB24
    output_path: Optional[Path] = None

    @property
    def frame_bytes(self) -> int:
        width, height = self.frame_size
        return width * height * self.pixel_format.bytes_per_pixel

    def __str__(self) -> str:
        return " ".join(self.argv)


class CaptureStrategy(Enum):
    LINUX = "v4l2"
    WINDOWS = "dshow"
    MACOS = "avfoundation"

    @property
    def input_format(self) -> str:
        return self.value

    @property
    def platform_name(self) -> str:
        return {"v4l2": "Linux", "dshow": "Windows", "avfoundation": "macOS"}[self.value]

    def input_target(self, device_id: str) -> str:
        """Device id as ffmpeg expects it after -i"""
        if self is CaptureStrategy.WINDOWS:
            return f"video={device_id}"
        return str(device_id)

    def pixel_format(self) -> PixelFormat:
        return RGB24

    def resolve_frame_size(self, camera: CameraConfig, settings: Settings) -> Tuple[int, int]:
        size = parse_resolution(effective_resolution(camera, settings))
        return size if size is not None else FALLBACK_FRAME_SIZE

    def _input_args(self, settings: Settings) -> List[str]:
        return [settings.ffmpeg_path, "-hide_banner", "-f", self.input_format]

    def build_preview_command(self, camera: CameraConfig, settings: Settings) -> Command:
        """Raw rgb24 frames on stdout"""
        width, height = self.resolve_frame_size(camera, settings)
        argv = self._input_args(settings) + [
            "-video_size", f"{width}x{height}",
            "-i", self.input_target(camera.device_id),
            "-f", "rawvideo",
            "-pix_fmt", self.pixel_format().name,
            "-",
        ]
        return Command(tuple(argv), CaptureMode.PREVIEW, (width, height), self.pixel_format())

    def build_stream_command(self, camera: CameraConfig, settings: Settings, work_dir) -> Command:
        """HLS playlist and segments written into work_dir"""
        width, height = self.resolve_frame_size(camera, settings)
        work_dir = Path(work_dir)
        playlist = work_dir / PLAYLIST_NAME

        argv = [settings.ffmpeg_path, "-hide_banner", "-y", "-f", self.input_format]
        if self is CaptureStrategy.WINDOWS:
            # Many dshow devices refuse a forced size, so scale after capture instead
            argv += ["-rtbufsize", "100M", "-i", self.input_target(camera.device_id)]
        else:
            argv += [
                "-video_size", f"{width}x{height}",
                "-framerate", STREAM_FRAMERATE,
                "-i", self.input_target(camera.device_id),
            ]
        # Players that insist on an audio track get a silent one
        argv += ["-f", "lavfi", "-i", "anullsrc=r=44100:cl=mono"]
        if self is CaptureStrategy.WINDOWS:
            argv += ["-vf", "scale=640:-2", "-r", STREAM_FRAMERATE]
        argv += [
            "-c:v", "libx264",
            "-preset", "ultrafast",
            "-tune", "zerolatency",
            "-profile:v", "baseline",
            "-level", "3.0",
            "-pix_fmt", "yuv420p",
            "-g", STREAM_FRAMERATE,
            "-c:a", "aac",
            "-b:a", "64k",
            "-shortest",
            "-f", "hls",
            "-hls_time", "1",
            "-hls_list_size", "3",
            "-hls_flags", "delete_segments+append_list",
            "-hls_segment_filename", str(work_dir / SEGMENT_PATTERN),
            str(playlist),
        ]
        return Command(tuple(argv), CaptureMode.STREAM, (width, height), self.pixel_format(), playlist)

    def build_snapshot_command(self, camera: CameraConfig, settings: Settings, output_path) -> Command:
        """Single frame written to output_path, overwriting"""
        width, height = self.resolve_frame_size(camera, settings)
        argv = self._input_args(settings) + ["-i", self.input_target(camera.device_id)]
        if self is CaptureStrategy.LINUX:
            # Virtual v4l2 devices often reject arbitrary input sizes; scale on output
            argv += ["-vf", f"scale={width}:{height}"]
        argv += ["-frames:v", "1", "-y", str(output_path)]
        return Command(tuple(argv), CaptureMode.SNAPSHOT, (width, height), self.pixel_format(), Path(output_path))


def select_strategy(system: Optional[str] = None) -> CaptureStrategy:
    """Return the strategy for the host platform (or for `system` if given)"""
    system = (system or platform.system()).lower()
    if system.startswith("win"):
        strategy = CaptureStrategy.WINDOWS
    elif system in ("darwin", "macos") or system.startswith("mac"):
        strategy = CaptureStrategy.MACOS
    else:
        strategy = CaptureStrategy.LINUX
    logger.info(f"Using camera strategy: {strategy.platform_name}")
    return strategy
