"""Clear exceptions for pycip-tags: addressing, typing, framing and transport errors."""


class PyCIPTagsError(Exception):
    """Base exception for pycip-tags."""

    pass


class AddressError(PyCIPTagsError):
    """Raised when a symbolic tag path cannot be parsed."""

    def __init__(self, path: str, message: str | None = None) -> None:
        self.path = path
        self._msg = message or f"Invalid tag path: {path!r}"
        super().__init__(self._msg)


class TypeMismatchError(PyCIPTagsError):
    """Raised when a value or request does not fit the tag's resolved type."""

    def __init__(self, message: str, *, tag: str | None = None) -> None:
        self.tag = tag
        super().__init__(message)


class UnsupportedTypeError(PyCIPTagsError):
    """Raised when the controller reports a type code with no decoder."""

    def __init__(self, type_code: int, *, tag: str | None = None) -> None:
        self.type_code = type_code
        self.tag = tag
        super().__init__(f"Unsupported data type 0x{type_code:04X}")


class MalformedFrameError(PyCIPTagsError):
    """Raised when bytes received from the controller cannot be decoded."""

    pass


class CIPServiceError(PyCIPTagsError):
    """Raised when the controller answers with a non-zero CIP or encapsulation status."""

    def __init__(
        self,
        message: str,
        *,
        status: int,
        extended_status: tuple[int, ...] = (),
        service: int | None = None,
        tag: str | None = None,
    ) -> None:
        self.status = status
        self.extended_status = extended_status
        self.service = service
        self.tag = tag
        super().__init__(message)


class TransportError(PyCIPTagsError):
    """Raised on socket-level failures; triggers the reconnection policy."""

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        self.cause = cause
        super().__init__(message)


class ResponseTimeoutError(TransportError):
    """Raised when no matching response arrives before the deadline."""

    pass


class SessionStateError(PyCIPTagsError):
    """Raised when a request is attempted on a session that is not connected."""

    pass


class DuplicateTagError(PyCIPTagsError):
    """Raised when a tag path is registered twice on the same controller."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Tag already registered: {path!r}")


class UnknownTagError(PyCIPTagsError):
    """Raised when a well-formed tag path names a symbol the controller does not have."""

    def __init__(self, tag: str, message: str | None = None) -> None:
        self.tag = tag
        self._msg = message or f"Unknown tag: {tag!r}"
        super().__init__(self._msg)
