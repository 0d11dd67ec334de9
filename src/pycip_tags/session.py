"""Session: registered encapsulation context with one controller."""

import logging
import threading
import time
from typing import Callable

from . import codec
from .config import DEFAULT_PORT, ReconnectPolicy
from .errors import (
    CIPServiceError,
    MalformedFrameError,
    PyCIPTagsError,
    ResponseTimeoutError,
    SessionStateError,
    TransportError,
)
from .transport import TcpTransport, Transport, TransportFactory
from .types import CIPReply, Command, Frame, SessionState

logger = logging.getLogger(__name__)


class Session:
    """
    One RegisterSession handshake plus the sequenced request/response exchange
    that runs on top of it.

    Only one request is outstanding at a time. Every request takes the next
    sequence number, carried in the sender context, and only a response echoing
    that number is accepted; anything else on the stream is logged and dropped.
    """

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_PORT,
        timeout: float = 5.0,
        *,
        slot: int | None = 0,
        reconnect_policy: ReconnectPolicy | None = None,
        transport_factory: TransportFactory | None = None,
        on_state_change: Callable[[SessionState], None] | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._timeout = timeout
        self._route = codec.backplane_route(slot) if slot is not None else None
        self.reconnect_policy = reconnect_policy or ReconnectPolicy()
        self._transport_factory: TransportFactory = transport_factory or TcpTransport
        self._transport: Transport | None = None
        self._state = SessionState.DISCONNECTED
        self._session_id = 0
        self._sequence = 0
        self._lock = threading.RLock()
        self._on_state_change = on_state_change

    def __repr__(self) -> str:
        return f"Session({self._host}:{self._port}, state={self._state.value}, id=0x{self._session_id:08X})"

    def _set_state(self, state: SessionState) -> None:
        if state == self._state:
            return
        self._state = state
        if self._on_state_change is not None:
            self._on_state_change(state)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session_id(self) -> int:
        return self._session_id

    @property
    def sequence(self) -> int:
        return self._sequence

    @property
    def connected(self) -> bool:
        return self._state == SessionState.CONNECTED

    def _next_sequence(self) -> int:
        self._sequence = (self._sequence + 1) % codec.SEQUENCE_MODULUS
        return self._sequence

    def _receive(self, transport: Transport, sequence: int) -> Frame:
        deadline = time.monotonic() + self._timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ResponseTimeoutError(f"No response to request {sequence} from {self._host}")
            header = transport.recv_exact(codec.HEADER_SIZE, remaining)
            _command, length, *_ = codec.decode_header(header)
            payload = b""
            if length:
                payload = transport.recv_exact(length, max(deadline - time.monotonic(), 0.001))
            frame = codec.decode_response(header + payload)
            if frame.sequence != sequence:
                logger.warning(
                    "Discarding response from %s with sequence %d (outstanding %d)",
                    self._host,
                    frame.sequence,
                    sequence,
                )
                continue
            return frame

    def open(self) -> None:
        """
        Open the transport and register a session.

        Failures leave the session FAULTED and propagate; there is no retry here.
        """
        with self._lock:
            if self._state == SessionState.CONNECTED:
                return
            self._set_state(SessionState.CONNECTING)
            transport = self._transport_factory(self._host, self._port, self._timeout)
            try:
                transport.open()
                sequence = self._next_sequence()
                transport.send(
                    codec.encode_request(0, sequence, Command.REGISTER_SESSION, codec.REGISTER_SESSION_DATA)
                )
                frame = self._receive(transport, sequence)
                if frame.status != 0:
                    raise CIPServiceError(
                        f"RegisterSession refused by {self._host} (status 0x{frame.status:08X})",
                        status=frame.status,
                    )
                if frame.command != Command.REGISTER_SESSION or frame.session_id == 0:
                    raise MalformedFrameError(f"Invalid RegisterSession reply from {self._host}")
            except PyCIPTagsError:
                transport.close()
                self._set_state(SessionState.FAULTED)
                raise
            self._transport = transport
            self._session_id = frame.session_id
            self._set_state(SessionState.CONNECTED)
            logger.info("Registered session 0x%08X with %s:%d", self._session_id, self._host, self._port)

    def close(self) -> None:
        """Best-effort UnRegisterSession, then close; always ends DISCONNECTED."""
        with self._lock:
            transport = self._transport
            if transport is not None:
                if self._state == SessionState.CONNECTED:
                    try:
                        transport.send(
                            codec.encode_request(
                                self._session_id, self._next_sequence(), Command.UNREGISTER_SESSION
                            )
                        )
                    except TransportError as e:
                        logger.warning("UnRegisterSession to %s failed: %s", self._host, e)
                transport.close()
            self._transport = None
            self._session_id = 0
            self._set_state(SessionState.DISCONNECTED)
            logger.debug("Session with %s closed", self._host)

    def abort(self) -> None:
        """Drop the transport without unregistering and mark the session FAULTED."""
        with self._lock:
            self._fault()

    def _fault(self) -> None:
        if self._transport is not None:
            self._transport.close()
        self._transport = None
        self._session_id = 0
        self._set_state(SessionState.FAULTED)

    def send(self, command: int, payload: bytes = b"") -> Frame:
        """Send one frame and block until the matching response or the deadline."""
        with self._lock:
            transport = self._transport
            if self._state != SessionState.CONNECTED or transport is None:
                raise SessionStateError(f"Session with {self._host} is {self._state.value}")
            sequence = self._next_sequence()
            logger.debug("-> %s command=0x%02X seq=%d len=%d", self._host, command, sequence, len(payload))
            try:
                transport.send(codec.encode_request(self._session_id, sequence, command, payload))
                frame = self._receive(transport, sequence)
            except TransportError:
                self._fault()
                raise
            except MalformedFrameError as e:
                # the stream cannot be re-synchronised once a header is bad
                self._fault()
                raise TransportError(f"Corrupt frame from {self._host}: {e}", cause=e) from e
        if frame.status != 0:
            raise CIPServiceError(
                f"Encapsulation error 0x{frame.status:08X} from {self._host}",
                status=frame.status,
            )
        return frame

    def request(self, message: bytes) -> CIPReply:
        """Send an unconnected CIP message (routed to the backplane slot if configured)."""
        if self._route is not None:
            message = codec.encode_unconnected_send(message, self._route)
        frame = self.send(Command.SEND_RR_DATA, codec.encode_rr_data(message))
        return codec.decode_cip_reply(codec.decode_rr_data(frame.payload))
