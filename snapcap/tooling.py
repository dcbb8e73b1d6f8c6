import logging
import subprocess
import threading
from typing import Optional

logger = logging.getLogger(__name__)

FFMPEG_DOWNLOAD_URL = "https://ffmpeg.org/download.html"


class EncoderProbe:
    """Checks once whether the external capture tool runs, and caches the answer.

    Owned by the application root and passed to whatever needs it; call
    refresh() after installing ffmpeg to probe again.
    """

    def __init__(self, ffmpeg_path: str = "ffmpeg", timeout: float = 2.0):
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout
        self._available: Optional[bool] = None
        self._version: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def available(self) -> bool:
        self._ensure_probed()
        return bool(self._available)

    @property
    def version(self) -> Optional[str]:
        self._ensure_probed()
        return self._version

    def refresh(self) -> bool:
        with self._lock:
            self._available = None
            self._version = None
        return self.available

    def _ensure_probed(self) -> None:
        with self._lock:
            if self._available is None:
                self._available, self._version = self._probe()

    def _probe(self):
        try:
            proc = subprocess.run(
                [self.ffmpeg_path, "-version"],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.info("FFmpeg not responding correctly")
            return False, None
        except OSError as e:
            logger.info(f"FFmpeg not found on system PATH: {e}")
            return False, None

        output = proc.stdout.decode("utf-8", errors="replace").splitlines()
        if proc.returncode != 0 or not output:
            logger.info("FFmpeg not responding correctly")
            return False, None
        logger.info(f"FFmpeg detected: {output[0]}")
        return True, output[0]

    def status_message(self) -> str:
        if self.available:
            return f"FFmpeg is available: {self.version}"
        return (f"FFmpeg is not installed or not in system PATH ({self.ffmpeg_path}). "
                f"Install FFmpeg: {FFMPEG_DOWNLOAD_URL}")
