"""Controller and reconnection settings."""

from dataclasses import dataclass, field, replace
from typing import Any, Iterator

DEFAULT_PORT = 44818

# UCMM requests and replies are limited to roughly 504 bytes on Logix firmware.
DEFAULT_MAX_PAYLOAD = 500


@dataclass(frozen=True)
class ReconnectPolicy:
    """
    Backoff schedule used after a session fault.

    multiplier=1.0 gives a fixed delay; max_retries=None retries forever.
    """

    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    max_retries: int | None = None

    def __post_init__(self) -> None:
        if self.initial_delay < 0:
            raise ValueError(f"initial_delay must be >= 0, got {self.initial_delay}")
        if self.multiplier < 1.0:
            raise ValueError(f"multiplier must be >= 1.0, got {self.multiplier}")
        if self.max_retries is not None and self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")

    def delays(self) -> Iterator[float]:
        """Yield the wait before each reconnection attempt."""
        delay = self.initial_delay
        attempt = 0
        while self.max_retries is None or attempt < self.max_retries:
            yield min(delay, self.max_delay)
            delay *= self.multiplier
            attempt += 1


@dataclass(frozen=True)
class ControllerConfig:
    """Connection, routing and polling settings for one controller."""

    port: int = DEFAULT_PORT
    timeout: float = 5.0
    slot: int | None = 0
    poll_interval: float = 1.0
    max_payload: int = DEFAULT_MAX_PAYLOAD
    failure_threshold: int = 3
    reconnect: ReconnectPolicy = field(default_factory=ReconnectPolicy)

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")
        if self.poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {self.poll_interval}")
        if self.max_payload < 100:
            raise ValueError(f"max_payload must be >= 100, got {self.max_payload}")
        if self.failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {self.failure_threshold}")
        if self.slot is not None and not (0 <= self.slot <= 255):
            raise ValueError(f"slot must be 0-255, got {self.slot}")

    def replace(self, **overrides: Any) -> "ControllerConfig":
        return replace(self, **overrides)
