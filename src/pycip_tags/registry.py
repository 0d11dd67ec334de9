"""ControllerManager: the table of controllers an application works with."""

import logging
import threading
from typing import Any

from .config import ControllerConfig
from .controller import Controller
from .transport import TransportFactory

logger = logging.getLogger(__name__)


class ControllerManager:
    """
    Creates and owns Controllers. Lifetime is the caller's: use it as a
    context manager or call close() to disconnect everything.

    Adding the same address twice creates two independent controllers.
    """

    def __init__(
        self,
        config: ControllerConfig | None = None,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        self._config = config or ControllerConfig()
        self._transport_factory = transport_factory
        self._controllers: list[Controller] = []
        self._lock = threading.Lock()

    def __enter__(self) -> "ControllerManager":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._controllers)

    def add_controller(self, address: str, **overrides: Any) -> Controller:
        """Create a controller; keyword overrides replace fields of the default config."""
        config = self._config.replace(**overrides) if overrides else self._config
        controller = Controller(address, config, transport_factory=self._transport_factory)
        with self._lock:
            self._controllers.append(controller)
        logger.debug("Added controller %s", address)
        return controller

    def remove_controller(self, controller: Controller, timeout: float | None = None) -> None:
        """Disconnect and forget a controller."""
        with self._lock:
            try:
                self._controllers.remove(controller)
            except ValueError:
                raise KeyError(f"Controller {controller.address!r} is not managed here") from None
        controller.disconnect(timeout)

    @property
    def controllers(self) -> list[Controller]:
        with self._lock:
            return list(self._controllers)

    def find(self, address: str) -> list[Controller]:
        """All controllers registered for `address` (in insertion order)."""
        return [c for c in self.controllers if c.address == address]

    def get_all_values(self) -> dict[tuple[str, str], Any]:
        """
        Snapshot of every cached tag value keyed by (address, tag path).

        No network I/O. When two controllers share an address and a tag path,
        the later-added one wins.
        """
        out: dict[tuple[str, str], Any] = {}
        for controller in self.controllers:
            for tag in controller.tags:
                out[(controller.address, tag.full_path)] = tag.value
        return out

    def close(self, timeout: float | None = None) -> None:
        """Disconnect every controller and clear the table."""
        with self._lock:
            controllers = list(self._controllers)
            self._controllers.clear()
        for controller in controllers:
            controller.disconnect(timeout)
        logger.debug("Closed %d controller(s)", len(controllers))
