"""Core data model: protocol enums, session/controller states, frames and replies."""

from dataclasses import dataclass
from enum import Enum, IntEnum


class Command(IntEnum):
    """EtherNet/IP encapsulation commands."""

    NOP = 0x00
    LIST_IDENTITY = 0x63
    REGISTER_SESSION = 0x65
    UNREGISTER_SESSION = 0x66
    SEND_RR_DATA = 0x6F
    SEND_UNIT_DATA = 0x70


class Service(IntEnum):
    """CIP service codes used by the client."""

    GET_ATTRIBUTE_LIST = 0x03
    MULTIPLE_SERVICE = 0x0A
    READ_TAG = 0x4C
    WRITE_TAG = 0x4D
    READ_TAG_FRAGMENTED = 0x52
    WRITE_TAG_FRAGMENTED = 0x53
    GET_INSTANCE_ATTRIBUTE_LIST = 0x55
    UNCONNECTED_SEND = 0x52  # same code, addressed to the Connection Manager


class ClassCode(IntEnum):
    """CIP object classes."""

    MESSAGE_ROUTER = 0x02
    CONNECTION_MANAGER = 0x06
    SYMBOL = 0x6B
    TEMPLATE = 0x6C


class SessionState(str, Enum):
    """Lifecycle of one registered encapsulation session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAULTED = "faulted"


class ControllerState(str, Enum):
    """Lifecycle of a controller as seen by callers."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAULTED = "faulted"


@dataclass(frozen=True)
class Frame:
    """One decoded encapsulation frame."""

    command: int
    session_id: int
    status: int
    sequence: int
    payload: bytes
    options: int = 0


@dataclass(frozen=True)
class CIPReply:
    """Message-router reply: service echo, general/extended status and data."""

    service: int
    status: int
    extended_status: tuple[int, ...]
    data: bytes

    @property
    def ok(self) -> bool:
        return self.status == 0


@dataclass(frozen=True)
class ExplainInfo:
    """Result of client.explain(path): parsed segments and encoded request path."""

    path: str
    program: str | None
    base: str
    segments: tuple[str, ...]
    request_path: str
