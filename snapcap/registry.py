"""
Registry of live capture sessions.

At most one session per device id, at most max_concurrent sessions overall.
Every removal path (explicit stop, process crash, shutdown) kills the
process, stops the segment server, deletes the temp directory and releases
the port.
"""

import logging
import shutil
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from PIL import Image

from .errors import CapacityExceeded, CaptureError
from .events import EventChannel
from .models import CameraConfig, CaptureMode, CaptureSession, Settings
from .ports import PortAllocator
from .segment_server import EphemeralSegmentServer
from .strategy import Command
from .supervisor import READINESS_TIMEOUT, CaptureProcessSupervisor, ReadinessMarkers
from .utils import safe_name

logger = logging.getLogger(__name__)

DEVICE_RELEASE_DELAY = 0.3

ReadyCallback = Callable[[CaptureSession], None]
ErrorCallback = Callable[[CaptureSession, Exception], None]
FrameCallback = Callable[[CaptureSession, Image.Image], None]


class SessionRegistry:
    """Starts, tracks and tears down capture sessions keyed by device id.

    The live-session counter and the port allocator share one lock, which is
    never held across process or HTTP I/O. Start and stop calls for the same
    device are serialized by a per-device lock; different devices proceed in
    parallel.
    """

    def __init__(self, strategy, settings: Settings, max_concurrent: Optional[int] = None,
                 port_allocator: Optional[PortAllocator] = None,
                 readiness_timeout: float = READINESS_TIMEOUT):
        self.strategy = strategy
        self.settings = settings
        self.readiness_timeout = readiness_timeout
        self.markers = ReadinessMarkers.from_config(settings.stream_ready_markers)
        self.events = EventChannel()

        self._lock = threading.Lock()
        self.ports = port_allocator if port_allocator is not None else PortAllocator(lock=self._lock)
        self._max_concurrent = max_concurrent if max_concurrent is not None else settings.max_concurrent_sessions
        self._sessions: Dict[str, CaptureSession] = {}
        self._running = 0
        self._device_locks: Dict[str, threading.Lock] = {}

    @property
    def max_concurrent(self) -> int:
        with self._lock:
            return self._max_concurrent

    @max_concurrent.setter
    def max_concurrent(self, value: int) -> None:
        with self._lock:
            self._max_concurrent = value

    @property
    def running_count(self) -> int:
        with self._lock:
            return self._running

    def get(self, device_id: str) -> Optional[CaptureSession]:
        with self._lock:
            return self._sessions.get(device_id)

    def live_device_ids(self) -> List[str]:
        with self._lock:
            return [device_id for device_id, session in self._sessions.items() if session.is_live]

    def _device_lock(self, device_id: str) -> threading.Lock:
        with self._lock:
            return self._device_locks.setdefault(device_id, threading.Lock())

    def _reserve(self, device_id: str) -> Optional[CaptureSession]:
        """Return the live session for device_id, or take a slot for a new one"""
        with self._lock:
            existing = self._sessions.get(device_id)
            if existing is not None and existing.is_live:
                return existing
            if self._running >= self._max_concurrent:
                raise CapacityExceeded(self._max_concurrent)
            self._running += 1
            return None

    def _release_slot(self) -> None:
        with self._lock:
            self._running = max(0, self._running - 1)
            idle = self._running == 0 and not self._sessions
        if idle:
            self.ports.reset()

    def _discard_dead(self, device_id: str) -> None:
        session = self.get(device_id)
        if session is not None and not session.is_live:
            self._teardown(session)

    def start_preview(self, camera: CameraConfig, on_frame: Optional[FrameCallback] = None,
                      on_ready: Optional[ReadyCallback] = None,
                      on_error: Optional[ErrorCallback] = None) -> CaptureSession:
        """Start raw-frame preview; returns the existing session if the camera is already live"""
        with self._device_lock(camera.device_id):
            self._discard_dead(camera.device_id)
            existing = self._reserve(camera.device_id)
            if existing is not None:
                return existing

            session = CaptureSession(camera.device_id, CaptureMode.PREVIEW, camera)
            session.callbacks = {"on_frame": on_frame, "on_ready": on_ready, "on_error": on_error}
            try:
                command = self.strategy.build_preview_command(camera, self.settings)
                self._launch(session, command)
            except BaseException:
                self._teardown(session)
                raise
            return session

    def start_stream(self, camera: CameraConfig, on_ready: Optional[ReadyCallback] = None,
                     on_error: Optional[ErrorCallback] = None) -> CaptureSession:
        """Start an HLS session served on loopback; returns the existing session if already live"""
        with self._device_lock(camera.device_id):
            self._discard_dead(camera.device_id)
            existing = self._reserve(camera.device_id)
            if existing is not None:
                return existing

            session = CaptureSession(camera.device_id, CaptureMode.STREAM, camera)
            session.callbacks = {"on_ready": on_ready, "on_error": on_error}
            try:
                session.port = self.ports.allocate()
                session.work_dir = Path(tempfile.mkdtemp(prefix=f"snapcap_hls_{safe_name(camera.name)}_"))
                logger.info(f"HLS directory: {session.work_dir}")
                session.server = EphemeralSegmentServer(session.work_dir, session.port)
                session.server.start()
                session.url = session.server.url
                command = self.strategy.build_stream_command(camera, self.settings, session.work_dir)
                self._launch(session, command)
            except BaseException:
                self._teardown(session)
                raise
            logger.info(f"Stream for {camera.name} at {session.url}")
            return session

    def _launch(self, session: CaptureSession, command: Command) -> None:
        callbacks = session.callbacks
        on_frame = callbacks.get("on_frame")
        on_ready = callbacks.get("on_ready")

        supervisor = CaptureProcessSupervisor(
            session.device_id,
            name=session.camera.name,
            on_ready=(lambda: on_ready(session)) if on_ready else None,
            on_frame=(lambda image: on_frame(session, image)) if on_frame else None,
            on_error=lambda error: self._on_process_failed(session, error),
            markers=self.markers,
            readiness_timeout=self.readiness_timeout,
            verbose=self.settings.verbose_output,
        )
        supervisor.events.subscribe(self.events.publish)
        session.supervisor = supervisor

        with self._lock:
            self._sessions[session.device_id] = session
        if not supervisor.start(command):
            raise supervisor.last_error

    def _on_process_failed(self, session: CaptureSession, error: Exception) -> None:
        # Runs on the supervisor's reader thread, which stop() would try to join
        threading.Thread(
            target=self._teardown_failed, args=(session, error),
            name=f"teardown-{session.camera.name}", daemon=True,
        ).start()

    def _teardown_failed(self, session: CaptureSession, error: Exception) -> None:
        logger.error(str(error))
        with self._device_lock(session.device_id):
            self._teardown(session)
        on_error = session.callbacks.get("on_error")
        if on_error is not None:
            try:
                on_error(session, error)
            except Exception:
                logger.exception(f"Error callback failed for camera {session.camera.name}")

    def _teardown(self, session: CaptureSession) -> None:
        with self._lock:
            if session.closed:
                return
            session.closed = True
            if self._sessions.get(session.device_id) is session:
                del self._sessions[session.device_id]

        if session.supervisor is not None:
            session.supervisor.stop()
        if session.server is not None:
            session.server.stop()
        if session.work_dir is not None:
            try:
                shutil.rmtree(session.work_dir)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.error(f"Error cleaning up HLS directory {session.work_dir}: {e}")
        self.ports.release(session.port)
        self._release_slot()

    def stop(self, device_id: str) -> bool:
        """Tear down the session for device_id; False if there was none"""
        with self._device_lock(device_id):
            session = self.get(device_id)
            if session is None:
                return False
            self._teardown(session)
        logger.info(f"Session for {session.camera.name} stopped")
        return True

    def stop_all(self) -> None:
        with self._lock:
            device_ids = list(self._sessions)
        for device_id in device_ids:
            self.stop(device_id)

    def shutdown_all(self) -> None:
        """Stop every session; used on application exit"""
        logger.info("Stopping all capture sessions...")
        self.stop_all()
        with self._lock:
            idle = self._running == 0
        if idle:
            self.ports.reset()

    def start_all(self, cameras: Iterable[CameraConfig], mode: CaptureMode = CaptureMode.PREVIEW,
                  **callbacks) -> List[CaptureSession]:
        """Start every active, preview-enabled camera up to the concurrency cap"""
        sessions = []
        for camera in cameras:
            if not (camera.active and camera.preview_enabled):
                continue
            try:
                if mode is CaptureMode.STREAM:
                    sessions.append(self.start_stream(camera, **callbacks))
                else:
                    sessions.append(self.start_preview(camera, **callbacks))
            except CapacityExceeded as e:
                logger.warning(f"{e}; not starting {camera.name} or later cameras")
                break
            except CaptureError as e:
                logger.error(f"could not start camera {camera.name}: {e}")
        return sessions

    @contextmanager
    def paused(self, device_ids: Optional[Iterable[str]] = None, release_delay: float = DEVICE_RELEASE_DELAY):
        """Stop live sessions (all, or those in device_ids) and restart them on exit"""
        wanted = set(device_ids) if device_ids is not None else None
        with self._lock:
            targets = [session for session in self._sessions.values()
                       if session.is_live and (wanted is None or session.device_id in wanted)]
        for session in targets:
            self.stop(session.device_id)
        if targets:
            # Give the devices time to release
            time.sleep(release_delay)
        try:
            yield [session.device_id for session in targets]
        finally:
            for session in targets:
                try:
                    if session.mode is CaptureMode.STREAM:
                        self.start_stream(session.camera, **session.callbacks)
                    else:
                        self.start_preview(session.camera, **session.callbacks)
                except CaptureError as e:
                    logger.error(f"could not restart camera {session.camera.name}: {e}")
