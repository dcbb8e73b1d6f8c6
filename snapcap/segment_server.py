"""
Loopback HTTP server exposing one session's HLS output directory.

Only GET and HEAD are supported. "/" is an alias for the playlist. The server
lives exactly as long as its capture session.
"""

import logging
import os
import shutil
import threading
import urllib.parse
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Optional, Tuple

from .errors import PortBindFailure, SegmentServerIOError
from .ports import REUSE_ADDRESS
from .strategy import PLAYLIST_NAME

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"
CHUNK_SIZE = 8192

CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"


def content_type_for(name: str) -> str:
    return CONTENT_TYPES.get(os.path.splitext(name)[1].lower(), DEFAULT_CONTENT_TYPE)


class _SegmentHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    allow_reuse_address = REUSE_ADDRESS

    def __init__(self, address, handler, root_dir: Path, playlist_name: str):
        self.root_dir = root_dir
        self.playlist_name = playlist_name
        super().__init__(address, handler)


class SegmentRequestHandler(BaseHTTPRequestHandler):
    server_version = "snapcap-segments"

    def do_GET(self):
        self._serve(send_body=True)

    def do_HEAD(self):
        self._serve(send_body=False)

    def log_message(self, format, *args):
        logger.debug(f"[segments:{self.server.server_address[1]}] {format % args}")

    def _resolve(self) -> Tuple[str, Optional[Path]]:
        """Map the request path to a regular file under root_dir; None if there is no such file"""
        path = urllib.parse.unquote(urllib.parse.urlparse(self.path).path)
        name = path.lstrip("/") or self.server.playlist_name
        root = self.server.root_dir
        try:
            target = (root / name).resolve()
            target.relative_to(root)
            if not target.is_file():
                return name, None
        except (ValueError, OSError) as e:
            # Escapes the root, or is not a usable path at all (e.g. embedded NUL)
            logger.debug(f"Rejected request path {path!r}: {e}")
            return name, None
        return name, target

    def _serve(self, send_body: bool) -> None:
        name, target = self._resolve()
        if target is None:
            self._send_not_found(name, send_body)
            return

        try:
            fh = open(target, "rb")
        except FileNotFoundError:
            # Segment rotated out between the check and the open
            self._send_not_found(name, send_body)
            return
        except OSError as e:
            logger.warning(str(SegmentServerIOError(name, str(e))))
            self._send_text(500, f"Error reading: {name}", send_body)
            return

        with fh:
            size = os.fstat(fh.fileno()).st_size
            self.send_response(200)
            self.send_header("Content-Type", content_type_for(name))
            self.send_header("Access-Control-Allow-Origin", "*")
            if send_body:
                self.send_header("Content-Length", str(size))
            self.end_headers()
            if not send_body:
                return
            try:
                shutil.copyfileobj(fh, self.wfile, CHUNK_SIZE)
            except (BrokenPipeError, ConnectionResetError):
                logger.debug(f"Client went away while receiving {name}")
            except OSError as e:
                logger.warning(str(SegmentServerIOError(name, str(e))))
                self.close_connection = True

    def _send_not_found(self, name: str, send_body: bool) -> None:
        self._send_text(404, f"File not found: {name}", send_body)

    def _send_text(self, status: int, text: str, send_body: bool) -> None:
        body = text.encode("utf-8") if send_body else b""
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)


class EphemeralSegmentServer:
    """Serves files from root_dir on 127.0.0.1:port until stopped"""

    def __init__(self, root_dir, port: int, playlist_name: str = PLAYLIST_NAME):
        self.root_dir = Path(root_dir).resolve()
        self.port = port
        self.playlist_name = playlist_name
        self._httpd: Optional[_SegmentHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def url(self) -> str:
        return f"http://{LOOPBACK}:{self.port}/{self.playlist_name}"

    @property
    def is_running(self) -> bool:
        return self._httpd is not None

    def start(self) -> None:
        with self._lock:
            if self._httpd is not None:
                return
            try:
                httpd = _SegmentHTTPServer((LOOPBACK, self.port), SegmentRequestHandler,
                                           self.root_dir, self.playlist_name)
            except OSError as e:
                raise PortBindFailure(self.port, str(e)) from e
            self._httpd = httpd
            self._thread = threading.Thread(
                target=httpd.serve_forever,
                kwargs={"poll_interval": 0.1},
                name=f"segment-server-{self.port}",
                daemon=True,
            )
            self._thread.start()
        logger.info(f"Segment server started on {self.url} serving {self.root_dir}")

    def stop(self, timeout: float = 2.0) -> None:
        """Stop serving and close the listening socket; safe to call repeatedly"""
        with self._lock:
            httpd, self._httpd = self._httpd, None
            thread, self._thread = self._thread, None
        if httpd is None:
            return
        httpd.shutdown()
        httpd.server_close()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        logger.info(f"Segment server on port {self.port} stopped")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
