import logging
import os
import socket
import threading
from typing import Optional, Set

from .errors import PortBindFailure

logger = logging.getLogger(__name__)

BASE_PORT = 49152
MAX_PROBES = 100
MAX_PORT = 65535

# SO_REUSEADDR lets a stopped session's port be rebound while old connections
# sit in TIME_WAIT; on Windows it would also allow two live listeners.
REUSE_ADDRESS = os.name != "nt"


def can_bind(port: int, host: str = "127.0.0.1") -> bool:
    """Return True if a listening socket could be bound to host:port right now"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        if REUSE_ADDRESS:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        return True
    except OSError:
        return False
    finally:
        sock.close()


class PortAllocator:
    """Hands out loopback ports for segment servers.

    Each allocation starts probing at base_port + offset, with the offset
    growing by one per allocation, and takes the first port that binds and is
    not already held by a live session. Ports stay reserved until release().
    reset() returns the offset to zero; the registry calls it once no session
    is live so a long-running process does not walk through the whole
    ephemeral range.
    """

    def __init__(self, base_port: int = BASE_PORT, max_probes: int = MAX_PROBES,
                 lock: Optional[threading.Lock] = None):
        self.base_port = base_port
        self.max_probes = max_probes
        self._offset = 0
        self._in_use: Set[int] = set()
        self._lock = lock if lock is not None else threading.Lock()

    def allocate(self) -> int:
        """Return a port that binds now; PortBindFailure if every candidate is held by a live session"""
        with self._lock:
            if self.base_port + self._offset + self.max_probes > MAX_PORT:
                self._offset = 0
            start = self.base_port + self._offset
            self._offset += 1

            candidates = [port for port in range(start, min(start + self.max_probes, MAX_PORT + 1))
                          if port not in self._in_use]
            if not candidates:
                raise PortBindFailure(start, f"all {self.max_probes} candidate ports are held by live sessions")

            for candidate in candidates:
                if can_bind(candidate):
                    self._in_use.add(candidate)
                    logger.debug(f"Allocated port {candidate}")
                    return candidate

            # Nothing bound; hand out a port no live session holds and let the server report the bind error
            fallback = candidates[0]
            logger.warning(f"No free port in {start}-{start + self.max_probes - 1}, falling back to {fallback}")
            self._in_use.add(fallback)
            return fallback

    def release(self, port: Optional[int]) -> None:
        if port is None:
            return
        with self._lock:
            self._in_use.discard(port)

    def reset(self) -> None:
        with self._lock:
            self._offset = 0
            logger.debug("Port offset reset")

    @property
    def offset(self) -> int:
        with self._lock:
            return self._offset

    @property
    def in_use(self) -> Set[int]:
        with self._lock:
            return set(self._in_use)
