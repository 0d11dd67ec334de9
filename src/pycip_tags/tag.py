"""Tag handle: one registered data point on a controller."""

from datetime import datetime
from typing import TYPE_CHECKING, Any, NamedTuple

from .address import RequestFragment
from .datatypes import encode
from .errors import TypeMismatchError
from .templates import ResolvedType

if TYPE_CHECKING:
    from .controller import Controller


class TagState(NamedTuple):
    """Last successful read, published as one unit."""

    raw: bytes | None
    value: Any
    timestamp: datetime | None


_EMPTY = TagState(None, None, None)


class Tag:
    """
    A named, typed data point registered on a Controller.

    The resolved type is filled in on the first successful poll and never
    changes afterwards. `value` returns the last value read without any I/O;
    assigning to it queues a write for the next polling cycle.
    """

    def __init__(
        self,
        controller: "Controller",
        fragment: RequestFragment,
        array_dims: int | None = None,
        array_size: int | None = None,
    ) -> None:
        self._controller = controller
        self._fragment = fragment
        self._array_dims = array_dims
        self._array_size = array_size
        self._resolved: ResolvedType | None = None
        self._state = _EMPTY
        self._stale = True
        self._error: Exception | None = None
        self._failed = False

    def __repr__(self) -> str:
        return f"Tag({self.full_path!r}, type={self.type_name}, value={self.value!r})"

    @property
    def controller(self) -> "Controller":
        return self._controller

    @property
    def fragment(self) -> RequestFragment:
        return self._fragment

    @property
    def path(self) -> str:
        return self._fragment.path

    @property
    def program(self) -> str | None:
        return self._fragment.program

    @property
    def full_path(self) -> str:
        return self._fragment.full_path

    @property
    def array_dims(self) -> int | None:
        return self._array_dims

    @property
    def array_size(self) -> int | None:
        return self._array_size

    @property
    def resolved(self) -> ResolvedType | None:
        return self._resolved

    @property
    def unresolved(self) -> bool:
        return self._resolved is None

    @property
    def type_name(self) -> str | None:
        return self._resolved.name if self._resolved else None

    @property
    def state(self) -> TagState:
        return self._state

    @property
    def raw(self) -> bytes | None:
        return self._state.raw

    @property
    def timestamp(self) -> datetime | None:
        return self._state.timestamp

    @property
    def stale(self) -> bool:
        """True until the first read succeeds, and again after a failed read."""
        return self._stale

    @property
    def error(self) -> Exception | None:
        return self._error

    @property
    def failed(self) -> bool:
        """True once the tag hit a type error; it is no longer polled."""
        return self._failed

    @property
    def value(self) -> Any:
        return self._state.value

    @value.setter
    def value(self, value: Any) -> None:
        self._controller.write(self, value)

    def encode(self, value: Any) -> bytes:
        """Encode `value` for this tag; the type must already be resolved."""
        if self._resolved is None:
            raise TypeMismatchError(f"{self.full_path}: type not resolved yet", tag=self.full_path)
        try:
            return encode(self._resolved.value_type, value)
        except TypeMismatchError as e:
            raise TypeMismatchError(f"{self.full_path}: {e}", tag=self.full_path) from e

    def validate(self, value: Any) -> None:
        """
        Check `value` against the resolved type or, before the type is known,
        against the array_size hint.
        """
        if self._resolved is not None:
            self.encode(value)
            return
        if self._array_size is not None:
            if not isinstance(value, (list, tuple)) or len(value) != self._array_size:
                raise TypeMismatchError(
                    f"{self.full_path}: expected a list of {self._array_size} elements", tag=self.full_path
                )

    # Updated by the owning controller's worker only.

    def _resolve(self, resolved: ResolvedType) -> None:
        if self._resolved is None:
            self._resolved = resolved

    def _store(self, raw: bytes, value: Any, timestamp: datetime) -> TagState:
        previous = self._state
        self._state = TagState(raw, value, timestamp)
        self._stale = False
        self._error = None
        return previous

    def _mark_stale(self, error: Exception) -> None:
        self._stale = True
        self._error = error

    def _fail(self, error: Exception) -> None:
        self._stale = True
        self._error = error
        self._failed = True
