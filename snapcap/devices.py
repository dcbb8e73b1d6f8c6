"""
Best-effort camera discovery.

Candidates are probed by opening them with PyAV through the strategy's input
format; a candidate counts as a camera if it exposes a video stream.
"""

import glob
import logging
import os
import re
from typing import List, Optional

import av
from av.error import FFmpegError

from .errors import DeviceUnavailable
from .models import CameraDevice
from .strategy import CaptureStrategy

logger = logging.getLogger(__name__)

# DirectShow needs device names; numeric indices generally won't work
WINDOWS_CANDIDATE_NAMES = [
    "Integrated Webcam",
    "USB2.0 HD UVC WebCam",
    "USB Camera",
    "Webcam",
    "Camera",
]
MACOS_MAX_INDEX = 5


def _open_error(strategy: CaptureStrategy, device_id: str) -> Optional[str]:
    """None if the device opens and has a video stream, otherwise the reason it doesn't"""
    try:
        container = av.open(strategy.input_target(device_id), format=strategy.input_format)
    except (FFmpegError, OSError, ValueError) as e:
        return str(e)
    try:
        if not container.streams.video:
            return "no video stream"
        return None
    finally:
        container.close()


def probe_device(strategy: CaptureStrategy, device_id: str) -> None:
    """Raise DeviceUnavailable unless device_id can be opened"""
    reason = _open_error(strategy, device_id)
    if reason is not None:
        raise DeviceUnavailable(device_id, reason)


def _video_index(path: str) -> int:
    match = re.search(r"(\d+)$", path)
    return int(match.group(1)) if match else -1


def _linux_candidates() -> List[CameraDevice]:
    paths = sorted(glob.glob("/dev/video*"), key=_video_index)
    return [CameraDevice(path, f"Camera {os.path.basename(path)}") for path in paths]


def list_devices(strategy: CaptureStrategy) -> List[CameraDevice]:
    """List devices on this platform that can actually be opened"""
    if strategy is CaptureStrategy.LINUX:
        candidates = _linux_candidates()
    elif strategy is CaptureStrategy.WINDOWS:
        candidates = [CameraDevice(name, name) for name in WINDOWS_CANDIDATE_NAMES]
    else:
        candidates = [CameraDevice(str(i), f"Camera {i}") for i in range(MACOS_MAX_INDEX)]

    available = []
    for device in candidates:
        reason = _open_error(strategy, device.id)
        if reason is None:
            available.append(device)
        else:
            logger.debug(f"Camera {device.id} is not available: {reason}")
    return available
