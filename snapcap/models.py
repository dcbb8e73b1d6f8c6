import os
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

DEFAULT_RESOLUTION = "640x480"
DEFAULT_OUTPUT_DIR = os.path.join("~", "Pictures", "SnapCap")
DEFAULT_FILENAME_PATTERN = "snapshot_{id}_{timestamp}.jpg"
DEFAULT_MAX_CONCURRENT = 4


class CaptureMode(Enum):
    PREVIEW = "preview"
    STREAM = "stream"
    SNAPSHOT = "snapshot"


class SessionState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    READY = "ready"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


TERMINAL_STATES = (SessionState.STOPPED, SessionState.FAILED)


@dataclass(frozen=True)
class CameraDevice:
    """A physical or virtual source as reported by device enumeration"""

    id: str
    display_name: str

    def __str__(self) -> str:
        return self.display_name


@dataclass
class CameraConfig:
    """Configured camera; resolution is an optional "WxH" override"""

    device_id: str
    name: str
    active: bool = True
    preview_enabled: bool = True
    resolution: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CameraConfig":
        device_id = str(data["device_id"])
        return cls(
            device_id=device_id,
            name=str(data.get("name") or device_id),
            active=bool(data.get("active", True)),
            preview_enabled=bool(data.get("preview_enabled", True)),
            resolution=data.get("resolution") or None,
        )

    def __str__(self) -> str:
        return self.name


@dataclass
class Settings:
    """Read-only input for the capture core"""

    snapshot_output_directory: str = DEFAULT_OUTPUT_DIR
    filename_pattern: str = DEFAULT_FILENAME_PATTERN
    default_resolution: str = DEFAULT_RESOLUTION
    verbose_output: bool = False
    max_concurrent_sessions: int = DEFAULT_MAX_CONCURRENT
    ffmpeg_path: str = "ffmpeg"
    cameras: List[CameraConfig] = field(default_factory=list)
    # Each entry is a group of substrings that must all appear in one line
    stream_ready_markers: Optional[List[List[str]]] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Settings":
        data = data or {}
        defaults = cls()
        markers = data.get("stream_ready_markers")
        return cls(
            snapshot_output_directory=str(data.get("snapshot_output_directory") or defaults.snapshot_output_directory),
            filename_pattern=str(data.get("filename_pattern") or defaults.filename_pattern),
            default_resolution=str(data.get("default_resolution") or defaults.default_resolution),
            verbose_output=bool(data.get("verbose_output", False)),
            max_concurrent_sessions=int(data.get("max_concurrent_sessions") or defaults.max_concurrent_sessions),
            ffmpeg_path=str(data.get("ffmpeg_path") or defaults.ffmpeg_path),
            cameras=[CameraConfig.from_dict(entry) for entry in data.get("cameras") or []],
            stream_ready_markers=[list(group) for group in markers] if markers else None,
        )

    @property
    def output_dir(self) -> Path:
        return Path(os.path.expanduser(self.snapshot_output_directory))


def parse_resolution(value: Optional[str]) -> Optional[Tuple[int, int]]:
    """Parse "WxH" into (width, height); None if malformed"""
    if not value:
        return None
    parts = value.strip().lower().split("x")
    if len(parts) != 2:
        return None
    try:
        width, height = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    if width <= 0 or height <= 0:
        return None
    return width, height


def effective_resolution(camera: CameraConfig, settings: Settings) -> str:
    """Camera override when set, otherwise the settings default"""
    if camera.resolution and camera.resolution.strip():
        return camera.resolution.strip()
    return settings.default_resolution


@dataclass
class SnapshotResult:
    device_id: str
    success: bool
    output_path: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CaptureSession:
    """One live external process for one camera, plus its port and temp dir"""

    device_id: str
    mode: CaptureMode
    camera: CameraConfig
    supervisor: Any = None
    server: Any = None
    port: Optional[int] = None
    work_dir: Optional[Path] = None
    url: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    callbacks: Dict[str, Any] = field(default_factory=dict, repr=False)
    closed: bool = field(default=False, repr=False)

    @property
    def state(self) -> SessionState:
        if self.supervisor is None:
            return SessionState.IDLE
        return self.supervisor.state

    @property
    def last_error(self) -> Optional[Exception]:
        return self.supervisor.last_error if self.supervisor is not None else None

    @property
    def readiness_timed_out(self) -> bool:
        return bool(self.supervisor is not None and self.supervisor.readiness_timed_out)

    @property
    def is_live(self) -> bool:
        return self.state not in TERMINAL_STATES
