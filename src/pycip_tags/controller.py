"""Controller: session, registered tags and the polling worker for one address."""

import logging
import threading
import time
from typing import Any

from .address import resolve as resolve_path
from .address import validate_hints
from .client import CIPClient
from .config import ControllerConfig
from .errors import DuplicateTagError, PyCIPTagsError, SessionStateError, UnknownTagError
from .events import CONNECTED, DISCONNECTED, EventEmitter, Listener
from .poller import PollingEngine
from .tag import Tag
from .transport import TransportFactory
from .types import ControllerState

logger = logging.getLogger(__name__)


class Controller:
    """
    One Logix controller polled on a background thread.

    connect() returns immediately; Connected(controller) fires once the session
    is registered and Disconnected() when it is lost or closed. A failed
    connection attempt also fires Disconnected(), once per outage, and once
    more when the ReconnectPolicy runs out of retries. Session faults are
    retried without touching the registered tags or their cached values.
    """

    def __init__(
        self,
        address: str,
        config: ControllerConfig | None = None,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        self._address = address
        self._config = config or ControllerConfig()
        self._events = EventEmitter()
        self._client = CIPClient(address, self._config, transport_factory=transport_factory)
        self._poller = PollingEngine(self._client, self._events.emit, self._config)
        self._tags: list[Tag] = []
        self._tags_lock = threading.Lock()
        self._state = ControllerState.DISCONNECTED
        self._announced = False
        self._down_reported = False
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._lifecycle_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Controller({self._address!r}, state={self._state.value}, tags={len(self._tags)})"

    @property
    def address(self) -> str:
        return self._address

    @property
    def config(self) -> ControllerConfig:
        return self._config

    @property
    def client(self) -> CIPClient:
        return self._client

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state == ControllerState.CONNECTED

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """
        Start the worker thread. No-op while it is already running.

        Raises SessionStateError while a worker told to stop by disconnect()
        has not exited yet.
        """
        with self._lifecycle_lock:
            if self.running:
                if self._stop.is_set():
                    raise SessionStateError(f"Worker for {self._address} is still shutting down")
                return
            self._stop.clear()
            self._down_reported = False
            self._thread = threading.Thread(target=self._run, name=f"pycip-{self._address}", daemon=True)
            self._thread.start()

    def disconnect(self, timeout: float | None = None) -> None:
        """
        Stop polling and close the session.

        An in-flight request is allowed to finish (or time out) before the
        worker exits.
        """
        with self._lifecycle_lock:
            self._stop.set()
            thread = self._thread
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout)
                if thread.is_alive():
                    logger.warning("Worker for %s still running after %.1fs", self._address, timeout or 0)
            # keep a live worker visible so connect() cannot start a second one
            if thread is None or not thread.is_alive():
                self._thread = None
            self._client.close()
            self._state = ControllerState.DISCONNECTED
            self._announce_disconnected()

    def __enter__(self) -> "Controller":
        self.connect()
        return self

    def __exit__(self, *args: Any) -> None:
        self.disconnect()

    def _announce_disconnected(self) -> None:
        if self._announced:
            self._announced = False
            self._events.emit(DISCONNECTED)

    def _report_down(self) -> None:
        # one Disconnected per outage, however many attempts fail
        self._announced = False
        if not self._down_reported:
            self._down_reported = True
            self._events.emit(DISCONNECTED)

    def _run(self) -> None:
        delays = None
        while not self._stop.is_set():
            self._state = ControllerState.CONNECTING
            try:
                self._client.connect()
            except PyCIPTagsError as e:
                if self._stop.is_set():
                    return
                logger.warning("Connection to %s failed: %s", self._address, e)
                self._state = ControllerState.FAULTED
                self._report_down()
            else:
                delays = None
                self._poller.reset()
                self._state = ControllerState.CONNECTED
                self._announced = True
                self._down_reported = False
                logger.info("Connected to %s", self._address)
                self._events.emit(CONNECTED, self)
                try:
                    self._poll()
                    return
                except PyCIPTagsError as e:
                    if self._stop.is_set():
                        return
                    logger.warning("Lost connection to %s: %s", self._address, e)
                    self._fault()
                except Exception:
                    if self._stop.is_set():
                        return
                    logger.exception("Polling %s failed unexpectedly", self._address)
                    self._fault()

            if delays is None:
                delays = self._client.session.reconnect_policy.delays()
            delay = next(delays, None)
            if delay is None:
                logger.error("Giving up on %s: reconnection retries exhausted", self._address)
                self._state = ControllerState.DISCONNECTED
                self._events.emit(DISCONNECTED)
                return
            logger.info("Reconnecting to %s in %.1fs", self._address, delay)
            if self._stop.wait(delay):
                return

    def _fault(self) -> None:
        self._client.session.abort()
        self._state = ControllerState.FAULTED
        self._report_down()

    def _poll(self) -> None:
        interval = self._config.poll_interval
        while not self._stop.is_set():
            started = time.monotonic()
            self._poller.run_cycle(self.tags)
            if self._stop.wait(max(interval - (time.monotonic() - started), 0)):
                return

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    def add_tag(
        self,
        path: str,
        program: str | None = None,
        array_dims: int | None = None,
        array_size: int | None = None,
    ) -> Tag:
        """
        Register a tag for polling. The path is parsed now (AddressError);
        its type is resolved against the controller on the next cycle.
        """
        validate_hints(path, array_dims, array_size)
        fragment = resolve_path(path, program)
        tag = Tag(self, fragment, array_dims, array_size)
        key = fragment.full_path.lower()
        with self._tags_lock:
            if any(t.full_path.lower() == key for t in self._tags):
                raise DuplicateTagError(fragment.full_path)
            self._tags.append(tag)
        logger.debug("Added tag %s to %s", tag.full_path, self._address)
        return tag

    def remove_tag(self, tag: Tag) -> None:
        with self._tags_lock:
            try:
                self._tags.remove(tag)
            except ValueError:
                raise UnknownTagError(tag.full_path, f"Tag {tag.full_path!r} is not registered on {self._address}") from None
        self._poller.discard_writes(tag)

    def get_tag(self, path: str, program: str | None = None) -> Tag | None:
        key = resolve_path(path, program).full_path.lower()
        with self._tags_lock:
            for t in self._tags:
                if t.full_path.lower() == key:
                    return t
        return None

    @property
    def tags(self) -> list[Tag]:
        """Registered tags in insertion order (a copy)."""
        with self._tags_lock:
            return list(self._tags)

    def values(self) -> dict[str, Any]:
        """Cached value of every tag keyed by full path; no network I/O."""
        return {t.full_path: t.value for t in self.tags}

    def write(self, tag: Tag, value: Any) -> None:
        """Queue a write; it is sent at the start of the next cycle."""
        if tag.controller is not self:
            raise UnknownTagError(tag.full_path, f"Tag {tag.full_path!r} belongs to another controller")
        tag.validate(value)
        self._poller.enqueue_write(tag, value)

    @property
    def pending_writes(self) -> int:
        return self._poller.pending_writes

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event: str, listener: Listener) -> None:
        self._events.on(event, listener)

    def off(self, event: str, listener: Listener) -> None:
        self._events.off(event, listener)

    def wait_for_cycle(self, timeout: float | None = None) -> bool:
        """Block until the next polling cycle completes; False on timeout."""
        return self._poller.wait_for_cycle(timeout)
