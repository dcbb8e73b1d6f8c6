"""
Supervision of one external capture process.

A supervisor spawns ffmpeg for one session, drains stdout and stderr on two
daemon threads, keeps the last lines of output for diagnostics, detects
readiness and unexpected exits, and shuts the process down within a bounded
time.

Stream readiness is inferred from ffmpeg's log text and the playlist on disk.
The matched substrings differ between ffmpeg versions, so they are
configurable through ReadinessMarkers rather than treated as a stable
protocol, and the wait is bounded from spawn whether or not a marker shows up.
"""

import io
import logging
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Deque, List, Optional, Sequence, Tuple

from PIL import Image

from .errors import ProcessExitedUnexpectedly, ProcessSpawnFailure, ReadinessTimeout
from .events import EventChannel, SessionEvent
from .models import TERMINAL_STATES, CaptureMode, SessionState
from .strategy import Command

logger = logging.getLogger(__name__)

DIAGNOSTIC_CAPACITY = 500
ERROR_TAIL_LINES = 20
STOP_GRACE_PERIOD = 2.0
JOIN_TIMEOUT = 1.0
READINESS_TIMEOUT = 10.0
READINESS_POLL_INTERVAL = 0.2


@dataclass(frozen=True)
class ReadinessMarkers:
    """Groups of substrings; a line matches when it contains every substring of one group"""

    groups: Tuple[Tuple[str, ...], ...] = (("Opening", ".ts"), ("Output #0",))

    @classmethod
    def from_config(cls, groups: Optional[Sequence[Sequence[str]]]) -> "ReadinessMarkers":
        if not groups:
            return cls()
        return cls(tuple(tuple(group) for group in groups if group))

    def matches(self, line: str) -> bool:
        return any(all(part in line for part in group) for group in self.groups)


def playlist_has_segment(playlist: Path) -> bool:
    """True once the playlist exists and references at least one segment"""
    try:
        content = Path(playlist).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return False
    return ".ts" in content


class CaptureProcessSupervisor:
    """Owns exactly one external process for one capture session.

    Callbacks are invoked from background threads and must not block:
    on_ready() once the output is safe to consume, on_frame(image) for every
    decoded preview frame, on_error(error) once if the process exits without
    a stop request. State changes are also published on `events`.
    """

    def __init__(self, device_id: str, name: Optional[str] = None,
                 on_ready: Optional[Callable[[], None]] = None,
                 on_error: Optional[Callable[[Exception], None]] = None,
                 on_frame: Optional[Callable[[Image.Image], None]] = None,
                 markers: Optional[ReadinessMarkers] = None,
                 readiness_timeout: float = READINESS_TIMEOUT,
                 poll_interval: float = READINESS_POLL_INTERVAL,
                 grace_period: float = STOP_GRACE_PERIOD,
                 join_timeout: float = JOIN_TIMEOUT,
                 capacity: int = DIAGNOSTIC_CAPACITY,
                 verbose: bool = False):
        self.device_id = device_id
        self.name = name or device_id
        self.on_ready = on_ready
        self.on_error = on_error
        self.on_frame = on_frame
        self.markers = markers or ReadinessMarkers()
        self.readiness_timeout = readiness_timeout
        self.poll_interval = poll_interval
        self.grace_period = grace_period
        self.join_timeout = join_timeout
        self.verbose = verbose

        self.events = EventChannel()
        self.last_error: Optional[Exception] = None
        self.exit_code: Optional[int] = None
        self.readiness_timed_out = False
        self.frame_count = 0

        self._state = SessionState.IDLE
        self._state_lock = threading.Lock()
        self._stop_requested = threading.Event()
        self._stopped = False
        self._proceeded = False
        self._diagnostics: Deque[str] = deque(maxlen=capacity)
        self._diagnostics_lock = threading.Lock()
        self._process: Optional[subprocess.Popen] = None
        self._command: Optional[Command] = None
        self._stdout_thread: Optional[threading.Thread] = None
        self._stderr_thread: Optional[threading.Thread] = None
        self._waiter_thread: Optional[threading.Thread] = None

    @property
    def state(self) -> SessionState:
        with self._state_lock:
            return self._state

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.poll() is None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    def diagnostics(self, limit: Optional[int] = None) -> List[str]:
        with self._diagnostics_lock:
            lines = list(self._diagnostics)
        return lines[-limit:] if limit else lines

    def _transition(self, new_state: SessionState, message: str = "", error: Optional[Exception] = None,
                    allowed_from: Optional[Sequence[SessionState]] = None) -> bool:
        with self._state_lock:
            previous = self._state
            if allowed_from is not None and previous not in allowed_from:
                return False
            self._state = new_state
        logger.debug(f"[{self.name}] {previous.value} -> {new_state.value}")
        self.events.publish(SessionEvent(self.device_id, new_state, previous, message, error))
        return True

    def _invoke(self, callback, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception(f"Callback failed for camera {self.name}")

    def start(self, command: Command) -> bool:
        """Spawn the process; False (state FAILED, last_error set) if it cannot be spawned"""
        if self.state is not SessionState.IDLE:
            logger.warning(f"Supervisor for {self.name} already started ({self.state.value})")
            return self.state not in TERMINAL_STATES

        self._command = command
        self._transition(SessionState.STARTING)
        logger.info(f"Starting ffmpeg for {self.name}: {command}")
        try:
            self._process = subprocess.Popen(
                list(command.argv),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            error = ProcessSpawnFailure(self.name, str(e))
            self.last_error = error
            logger.error(str(error))
            self._transition(SessionState.FAILED, str(error), error)
            return False

        if command.mode is CaptureMode.PREVIEW:
            stdout_target = self._read_frames
        else:
            stdout_target = self._read_lines
        self._stdout_thread = threading.Thread(
            target=stdout_target, args=(self._process.stdout, "stdout"),
            name=f"ffmpeg-stdout-{self.name}", daemon=True,
        )
        self._stderr_thread = threading.Thread(
            target=self._read_lines, args=(self._process.stderr, "stderr"),
            name=f"ffmpeg-stderr-{self.name}", daemon=True,
        )
        self._stdout_thread.start()
        self._stderr_thread.start()

        if command.mode is CaptureMode.STREAM:
            deadline = time.monotonic() + self.readiness_timeout
            self._waiter_thread = threading.Thread(
                target=self._await_output, args=(command.output_path, deadline),
                name=f"ffmpeg-ready-{self.name}", daemon=True,
            )
            self._waiter_thread.start()
        return True

    def _record(self, stream_name: str, line: str) -> None:
        with self._diagnostics_lock:
            self._diagnostics.append(f"[{stream_name}] {line}")
        level = logging.INFO if self.verbose else logging.DEBUG
        logger.log(level, f"[ffmpeg-{self.name}-{stream_name}] {line}")

    def _read_lines(self, stream, stream_name: str) -> None:
        # Universal newlines: ffmpeg ends its progress line with a bare carriage return
        text = io.TextIOWrapper(stream, encoding="utf-8", errors="replace", newline=None)
        try:
            for line in text:
                line = line.rstrip()
                if not line:
                    continue
                self._record(stream_name, line)
                if stream_name == "stderr":
                    self._check_marker(line)
        except (OSError, ValueError) as e:
            if not self._stop_requested.is_set():
                logger.debug(f"Error reading ffmpeg {stream_name} for {self.name}: {e}")
        if stream_name == "stderr":
            self._handle_exit()

    def _read_frames(self, stream, stream_name: str) -> None:
        command = self._command
        frame_bytes = command.frame_bytes
        try:
            while not self._stop_requested.is_set():
                data = stream.read(frame_bytes)
                if not data or len(data) < frame_bytes:
                    break
                try:
                    image = Image.frombytes(command.pixel_format.image_mode, command.frame_size, data)
                except ValueError as e:
                    logger.warning(f"Could not decode frame from {self.name}: {e}")
                    continue
                self.frame_count += 1
                if self.frame_count == 1:
                    self._notify_ready()
                self._invoke(self.on_frame, image)
        except (OSError, ValueError) as e:
            if not self._stop_requested.is_set():
                logger.debug(f"Error reading frames for {self.name}: {e}")

    def _check_marker(self, line: str) -> None:
        command = self._command
        if command is None or command.mode is not CaptureMode.STREAM:
            return
        if not self.markers.matches(line):
            return
        if self._transition(SessionState.READY, line, allowed_from=(SessionState.STARTING,)):
            logger.info(f"ffmpeg output initialized for {self.name}, waiting for playlist")

    def _notify_ready(self) -> None:
        if self.state is SessionState.STARTING:
            self._transition(SessionState.READY, allowed_from=(SessionState.STARTING,))
        if self.state is not SessionState.READY:
            return
        self._proceeded = True
        self._invoke(self.on_ready)
        self._transition(SessionState.RUNNING, allowed_from=(SessionState.READY,))

    def _await_output(self, playlist: Optional[Path], deadline: float) -> None:
        """Hold back on_ready until the playlist lists a segment, or until deadline.

        Without a playlist path the marker line alone counts as ready.
        """
        while not self._stop_requested.is_set():
            state = self.state
            if state in TERMINAL_STATES:
                return
            if playlist is None:
                ready = state is SessionState.READY
            else:
                ready = playlist_has_segment(playlist)
            if ready:
                logger.info(f"HLS playlist ready: {playlist}")
                self._notify_ready()
                return
            if time.monotonic() >= deadline:
                break
            self._stop_requested.wait(self.poll_interval)

        if self._stop_requested.is_set():
            return
        waiting = (SessionState.STARTING, SessionState.READY)
        if self.state not in waiting:
            return
        warning = ReadinessTimeout(self.name, self.readiness_timeout)
        self.readiness_timed_out = True
        self._proceeded = True
        logger.warning(str(warning))
        self._transition(SessionState.RUNNING, str(warning), warning, allowed_from=waiting)

    def _handle_exit(self) -> None:
        process = self._process
        if process is None:
            return
        try:
            exit_code = process.wait(timeout=self.grace_period)
        except subprocess.TimeoutExpired:
            # stderr closed but the process lingers; stop() will deal with it
            return
        self.exit_code = exit_code
        if self._stop_requested.is_set():
            return

        error = ProcessExitedUnexpectedly(self.name, exit_code, self.diagnostics(ERROR_TAIL_LINES),
                                          during_startup=not self._proceeded)
        live_states = (SessionState.STARTING, SessionState.READY, SessionState.RUNNING)
        if not self._transition(SessionState.FAILED, str(error), error, allowed_from=live_states):
            return
        self.last_error = error
        logger.error(f"=== ffmpeg process ended === camera: {self.name}, exit code: {exit_code}, "
                     f"collected lines: {len(self._diagnostics)}")
        for line in error.diagnostics:
            logger.error(f"  {line}")
        self._invoke(self.on_error, error)

    def stop(self) -> None:
        """Terminate, then kill after the grace period; always returns within a bounded time"""
        with self._state_lock:
            if self._stopped:
                return
            self._stopped = True
        self._stop_requested.set()

        failed = self.state is SessionState.FAILED
        if not failed:
            self._transition(SessionState.STOPPING)

        process = self._process
        if process is not None and process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=self.grace_period)
            except subprocess.TimeoutExpired:
                logger.warning(f"ffmpeg for {self.name} did not exit within {self.grace_period}s, killing")
                process.kill()
                try:
                    process.wait(timeout=self.join_timeout)
                except subprocess.TimeoutExpired:
                    logger.error(f"ffmpeg for {self.name} (pid {process.pid}) survived kill")

        # A reader that misses its deadline is abandoned; the process is already gone
        current = threading.current_thread()
        for thread in (self._stdout_thread, self._stderr_thread, self._waiter_thread):
            if thread is None or thread is current:
                continue
            thread.join(self.join_timeout)
            if thread.is_alive():
                logger.warning(f"Abandoning thread {thread.name} after {self.join_timeout}s")

        if process is not None:
            self.exit_code = process.returncode
            for stream, thread in ((process.stdout, self._stdout_thread), (process.stderr, self._stderr_thread)):
                if stream is not None and (thread is None or not thread.is_alive()):
                    stream.close()

        if not failed:
            self._transition(SessionState.STOPPED)
        logger.info(f"Stopped ffmpeg for {self.name}")
