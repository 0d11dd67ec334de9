"""
Polling engine: one cycle of write flush, tag resolution and batched reads.

A cycle runs on the controller's worker thread:

1. queued writes are sent in FIFO order;
2. tags without a resolved type get a metadata lookup and an individual read;
3. resolved tags are read in Multiple Service batches and compared byte-wise
   with their cached value, emitting TagChanged on a difference.

Per-tag and per-batch failures are reported through TagError events and the
tag's stale flag. TransportError propagates and aborts the cycle; cached
values are left untouched.
"""

import collections
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable

from .client import CIPClient, ReadReply, decode_reply, plan_batches
from .config import ControllerConfig
from .errors import (
    CIPServiceError,
    MalformedFrameError,
    TransportError,
    TypeMismatchError,
    UnknownTagError,
    UnsupportedTypeError,
)
from .events import TAG_CHANGED, TAG_ERROR
from .tag import Tag

logger = logging.getLogger(__name__)

# Errors that make a tag permanently unpollable
_FATAL_TAG_ERRORS = (TypeMismatchError, UnsupportedTypeError, UnknownTagError)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PollingEngine:
    def __init__(self, client: CIPClient, emit: Callable[..., None], config: ControllerConfig) -> None:
        self._client = client
        self._emit = emit
        self._config = config
        self._writes: collections.deque[tuple[Tag, Any]] = collections.deque()
        self._writes_lock = threading.Lock()
        self._consecutive_failures = 0
        self._cycles = 0
        self._cycle_done = threading.Condition()

    @property
    def cycles(self) -> int:
        return self._cycles

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def pending_writes(self) -> int:
        with self._writes_lock:
            return len(self._writes)

    def enqueue_write(self, tag: Tag, value: Any) -> None:
        with self._writes_lock:
            self._writes.append((tag, value))
        logger.debug("Queued write to %s", tag.full_path)

    def discard_writes(self, tag: Tag) -> None:
        with self._writes_lock:
            self._writes = collections.deque(item for item in self._writes if item[0] is not tag)

    def wait_for_cycle(self, timeout: float | None = None) -> bool:
        """Block until the next cycle completes; False on timeout."""
        with self._cycle_done:
            target = self._cycles + 1
            return self._cycle_done.wait_for(lambda: self._cycles >= target, timeout)

    def reset(self) -> None:
        """Forget failure accounting (after a fresh session)."""
        self._consecutive_failures = 0

    # ------------------------------------------------------------------

    def run_cycle(self, tags: list[Tag]) -> None:
        """
        Run one polling cycle over `tags`.

        Raises TransportError on socket failure, or when failure_threshold
        consecutive cycles had a failed batch.
        """
        self._flush_writes()

        for tag in tags:
            if tag.unresolved and not tag.failed:
                self._resolve_tag(tag)

        active = [t for t in tags if not t.failed and not t.unresolved]
        failed = self._read_resolved(active)

        if failed:
            self._consecutive_failures += 1
            logger.warning(
                "Polling cycle on %s had %d failed batch(es) (%d consecutive)",
                self._client.host,
                failed,
                self._consecutive_failures,
            )
            if self._consecutive_failures >= self._config.failure_threshold:
                count = self._consecutive_failures
                self._consecutive_failures = 0
                raise TransportError(f"{count} consecutive failed polling cycles on {self._client.host}")
        else:
            self._consecutive_failures = 0

        with self._cycle_done:
            self._cycles += 1
            self._cycle_done.notify_all()

    def _flush_writes(self) -> None:
        while True:
            with self._writes_lock:
                if not self._writes:
                    return
                tag, value = self._writes.popleft()
            try:
                self._write(tag, value)
            except TransportError:
                with self._writes_lock:
                    self._writes.appendleft((tag, value))
                raise

    def _write(self, tag: Tag, value: Any) -> None:
        if tag.failed:
            logger.warning("Dropping write to failed tag %s", tag.full_path)
            return
        if tag.unresolved and not self._resolve_tag(tag):
            logger.warning("Dropping write to unresolved tag %s", tag.full_path)
            return
        try:
            raw = tag.encode(value)
            self._client.write_tag(tag.fragment, tag.resolved, raw)
        except (TypeMismatchError, CIPServiceError, MalformedFrameError) as e:
            logger.warning("Write to %s failed: %s", tag.full_path, e)
            self._emit(TAG_ERROR, tag, e)
            return
        logger.debug("Wrote %s", tag.full_path)

    def _resolve_tag(self, tag: Tag) -> bool:
        """Metadata lookup plus an individual first read; returns True once resolved."""
        try:
            resolved = self._client.directory.resolve(tag.fragment, tag.array_dims, tag.array_size)
            reply = self._client.read_tag(tag.fragment, resolved.count)
            value = decode_reply(resolved, reply, tag.full_path)
        except _FATAL_TAG_ERRORS as e:
            logger.error("Tag %s removed from polling: %s", tag.full_path, e)
            tag._fail(e)
            self._emit(TAG_ERROR, tag, e)
            return False
        except (CIPServiceError, MalformedFrameError) as e:
            logger.warning("Could not resolve %s: %s", tag.full_path, e)
            tag._mark_stale(e)
            self._emit(TAG_ERROR, tag, e)
            return False
        tag._resolve(resolved)
        self._update(tag, reply, value)
        logger.debug("Resolved %s as %s", tag.full_path, resolved.name)
        return True

    def _update(self, tag: Tag, reply: ReadReply, value: Any) -> None:
        if tag.raw == reply.data:
            tag._store(reply.data, tag.value, tag.timestamp or _now())
            return
        previous = tag._store(reply.data, value, _now())
        self._emit(TAG_CHANGED, tag, previous.value)

    def _apply(self, tag: Tag, reply: ReadReply) -> None:
        try:
            value = decode_reply(tag.resolved, reply, tag.full_path)
        except _FATAL_TAG_ERRORS as e:
            logger.error("Tag %s removed from polling: %s", tag.full_path, e)
            tag._fail(e)
            self._emit(TAG_ERROR, tag, e)
            return
        except MalformedFrameError as e:
            tag._mark_stale(e)
            self._emit(TAG_ERROR, tag, e)
            return
        self._update(tag, reply, value)

    def _read_resolved(self, tags: list[Tag]) -> int:
        """Read all resolved tags; returns the number of failed batches."""
        if not tags:
            return 0
        items = [(tag, tag.fragment, tag.resolved) for tag in tags]
        batches, singles = plan_batches(items, self._config.max_payload, self._config.slot is not None)
        failed = 0

        for batch in batches:
            try:
                results = self._client.read_tags([(fragment, resolved.count) for _t, fragment, resolved in batch])
            except (CIPServiceError, MalformedFrameError) as e:
                failed += 1
                logger.warning("Batch of %d tag(s) failed: %s", len(batch), e)
                for tag, _f, _r in batch:
                    tag._mark_stale(e)
                    self._emit(TAG_ERROR, tag, e)
                continue
            for (tag, _f, _r), result in zip(batch, results):
                if isinstance(result, CIPServiceError):
                    tag._mark_stale(result)
                    self._emit(TAG_ERROR, tag, result)
                else:
                    self._apply(tag, result)

        for tag, fragment, resolved in singles:
            try:
                reply = self._client.read_tag(fragment, resolved.count)
            except (CIPServiceError, MalformedFrameError) as e:
                failed += 1
                tag._mark_stale(e)
                self._emit(TAG_ERROR, tag, e)
                continue
            self._apply(tag, reply)

        return failed
