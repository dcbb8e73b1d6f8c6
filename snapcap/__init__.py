"""
Capture-session orchestration package
Spawns and supervises one ffmpeg process per camera for raw previews or HLS
streams served on loopback, caps concurrent sessions, and runs snapshot bursts.
"""

from .errors import (
    CaptureError,
    CapacityExceeded,
    DeviceUnavailable,
    PortBindFailure,
    ProcessExitedUnexpectedly,
    ProcessSpawnFailure,
    ReadinessTimeout,
    SegmentServerIOError,
    SnapshotFailure,
)
from .models import (
    CameraConfig,
    CameraDevice,
    CaptureMode,
    CaptureSession,
    SessionState,
    Settings,
    SnapshotResult,
    effective_resolution,
    parse_resolution,
)
from .registry import SessionRegistry
from .segment_server import EphemeralSegmentServer
from .snapshot import SnapshotCoordinator
from .strategy import CaptureStrategy, Command, select_strategy
from .supervisor import CaptureProcessSupervisor, ReadinessMarkers
from .tooling import EncoderProbe
from . import utils

__all__ = [
    "CaptureError",
    "CapacityExceeded",
    "DeviceUnavailable",
    "PortBindFailure",
    "ProcessExitedUnexpectedly",
    "ProcessSpawnFailure",
    "ReadinessTimeout",
    "SegmentServerIOError",
    "SnapshotFailure",
    "CameraConfig",
    "CameraDevice",
    "CaptureMode",
    "CaptureSession",
    "SessionState",
    "Settings",
    "SnapshotResult",
    "effective_resolution",
    "parse_resolution",
    "SessionRegistry",
    "EphemeralSegmentServer",
    "SnapshotCoordinator",
    "CaptureStrategy",
    "Command",
    "select_strategy",
    "CaptureProcessSupervisor",
    "ReadinessMarkers",
    "EncoderProbe",
    "utils",
]
