"""pycip-tags: Logix controller tag polling and access over EtherNet/IP (CIP)."""

__version__ = "0.1.0"

from .client import CIPClient
from .config import ControllerConfig, ReconnectPolicy
from .controller import Controller
from .errors import (
    AddressError,
    CIPServiceError,
    DuplicateTagError,
    MalformedFrameError,
    PyCIPTagsError,
    ResponseTimeoutError,
    SessionStateError,
    TransportError,
    TypeMismatchError,
    UnknownTagError,
    UnsupportedTypeError,
)
from .events import CONNECTED, DISCONNECTED, TAG_CHANGED, TAG_ERROR
from .registry import ControllerManager
from .tag import Tag
from .types import ControllerState, SessionState

__all__ = [
    "__version__",
    "CIPClient",
    "Controller",
    "ControllerConfig",
    "ControllerManager",
    "ControllerState",
    "ReconnectPolicy",
    "SessionState",
    "Tag",
    "CONNECTED",
    "DISCONNECTED",
    "TAG_CHANGED",
    "TAG_ERROR",
    "AddressError",
    "CIPServiceError",
    "DuplicateTagError",
    "MalformedFrameError",
    "PyCIPTagsError",
    "ResponseTimeoutError",
    "SessionStateError",
    "TransportError",
    "TypeMismatchError",
    "UnknownTagError",
    "UnsupportedTypeError",
]
