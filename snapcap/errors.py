"""Failure types raised or reported by the capture core.

Every failure is local to one session or one camera. Sessions report them
through callbacks or result values; nothing here is meant to end the process.
"""

from typing import List, Optional, Sequence


class CaptureError(Exception):
    """Base class for all capture errors"""


class DeviceUnavailable(CaptureError):
    def __init__(self, device_id: str, reason: str):
        self.device_id = device_id
        self.reason = reason
        super().__init__(f"device {device_id} unavailable: {reason}")


class ProcessSpawnFailure(CaptureError):
    def __init__(self, device_id: str, reason: str):
        self.device_id = device_id
        self.reason = reason
        super().__init__(f"could not start camera {device_id}: {reason}")


class ProcessExitedUnexpectedly(CaptureError):
    """The external tool exited without a stop request"""

    def __init__(self, device_id: str, exit_code: Optional[int], diagnostics: Sequence[str] = (),
                 during_startup: bool = False):
        self.device_id = device_id
        self.exit_code = exit_code
        self.diagnostics: List[str] = list(diagnostics)
        self.during_startup = during_startup
        if during_startup:
            message = f"could not start camera {device_id}: process exited with code {exit_code}"
        else:
            message = f"stream ended unexpectedly for {device_id} (exit code {exit_code})"
        super().__init__(message)


class ReadinessTimeout(CaptureError):
    """Soft failure: the session keeps running"""

    def __init__(self, device_id: str, timeout: float):
        self.device_id = device_id
        self.timeout = timeout
        super().__init__(f"output for {device_id} not ready after {timeout:.1f}s, proceeding anyway")


class PortBindFailure(CaptureError):
    def __init__(self, port: int, reason: str):
        self.port = port
        self.reason = reason
        super().__init__(f"could not bind 127.0.0.1:{port}: {reason}")


class SegmentServerIOError(CaptureError):
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"error serving {path}: {reason}")


class SnapshotFailure(CaptureError):
    def __init__(self, device_id: str, reason: str):
        self.device_id = device_id
        self.reason = reason
        super().__init__(f"snapshot failed for {device_id}: {reason}")


class CapacityExceeded(CaptureError):
    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"maximum concurrent sessions reached ({limit})")
