"""Blocking TCP stream used by a Session."""

import logging
import socket
from typing import Callable, Protocol

from .errors import ResponseTimeoutError, TransportError

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """What a Session needs from the byte stream underneath it."""

    def open(self) -> None: ...

    def send(self, data: bytes) -> None: ...

    def recv_exact(self, size: int, timeout: float) -> bytes: ...

    def close(self) -> None: ...


TransportFactory = Callable[[str, int, float], Transport]


class TcpTransport:
    """socket-backed Transport; each recv_exact call gets its own deadline."""

    def __init__(self, host: str, port: int, timeout: float) -> None:
        self._host = host
        self._port = port
        self._timeout = timeout
        self._sock: socket.socket | None = None

    def open(self) -> None:
        try:
            self._sock = socket.create_connection((self._host, self._port), timeout=self._timeout)
        except socket.timeout as e:
            raise ResponseTimeoutError(f"Timed out connecting to {self._host}:{self._port}", cause=e) from e
        except OSError as e:
            raise TransportError(f"Failed to connect to {self._host}:{self._port}: {e}", cause=e) from e
        self._sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        logger.debug("Opened TCP connection to %s:%d", self._host, self._port)

    def _require_socket(self) -> socket.socket:
        if self._sock is None:
            raise TransportError(f"Connection to {self._host}:{self._port} is not open")
        return self._sock

    def send(self, data: bytes) -> None:
        sock = self._require_socket()
        try:
            sock.sendall(data)
        except socket.timeout as e:
            raise ResponseTimeoutError("Timed out sending request", cause=e) from e
        except OSError as e:
            raise TransportError(f"Send failed: {e}", cause=e) from e

    def recv_exact(self, size: int, timeout: float) -> bytes:
        sock = self._require_socket()
        sock.settimeout(timeout)
        chunks: list[bytes] = []
        remaining = size
        try:
            while remaining:
                chunk = sock.recv(remaining)
                if not chunk:
                    raise TransportError(f"Connection closed by {self._host}:{self._port}")
                chunks.append(chunk)
                remaining -= len(chunk)
        except socket.timeout as e:
            raise ResponseTimeoutError(f"No response from {self._host}:{self._port} within {timeout:.1f}s", cause=e) from e
        except OSError as e:
            raise TransportError(f"Receive failed: {e}", cause=e) from e
        return b"".join(chunks)

    def close(self) -> None:
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError as e:
                logger.warning("Error closing socket to %s:%d: %s", self._host, self._port, e)
            self._sock = None
