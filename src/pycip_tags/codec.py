"""
Binary codec for EtherNet/IP encapsulation and CIP explicit messaging.

Everything here is a pure transform between Python values and bytes. Frames
always carry an explicit payload length in their 24-byte header so the stream
can be split without sentinels; decoding never truncates, it raises
MalformedFrameError instead.
"""

import struct
from typing import Sequence

from .errors import MalformedFrameError
from .types import CIPReply, ClassCode, Command, Frame, Service

# command, length, session handle, status, sender context, options
HEADER = struct.Struct("<HHIIQI")
HEADER_SIZE = HEADER.size
MAX_FRAME_PAYLOAD = 65511
SEQUENCE_MODULUS = 1 << 64
PROTOCOL_VERSION = 1

SUCCESS = 0x00
PARTIAL_TRANSFER = 0x06
EMBEDDED_SERVICE_ERROR = 0x1E

STRUCT_TYPE_CODE = 0x02A0

_KNOWN_COMMANDS = frozenset(int(c) for c in Command)

_CPF_NULL_ADDRESS = 0x0000
_CPF_UNCONNECTED_DATA = 0x00B2

STATUS_MESSAGES: dict[int, str] = {
    0x00: "Success",
    0x01: "Connection failure",
    0x04: "Path segment error",
    0x05: "Path destination unknown",
    0x06: "Partial transfer",
    0x08: "Service not supported",
    0x0A: "Attribute list error",
    0x0C: "Object state conflict",
    0x13: "Not enough data",
    0x14: "Attribute not supported",
    0x15: "Too much data",
    0x1E: "Embedded service error",
    0x26: "Invalid path size",
    0xFF: "General error",
}


def status_message(status: int) -> str:
    return STATUS_MESSAGES.get(status, f"Unknown status 0x{status:02X}")


# ============================================================================
# Encapsulation frames
# ============================================================================


def encode_frame(command: int, session_id: int, sequence: int, payload: bytes = b"", status: int = 0) -> bytes:
    """Build one encapsulation frame; the sequence travels in the sender context."""
    if len(payload) > MAX_FRAME_PAYLOAD:
        raise ValueError(f"Payload too large: {len(payload)} bytes")
    return HEADER.pack(int(command), len(payload), session_id, status, sequence % SEQUENCE_MODULUS, 0) + payload


def encode_request(session_id: int, sequence: int, command: int, payload: bytes = b"") -> bytes:
    return encode_frame(command, session_id, sequence, payload)


def decode_header(data: bytes) -> tuple[int, int, int, int, int, int]:
    """
    Decode and range-check a frame header.

    Returns (command, length, session_id, status, sequence, options).
    """
    if len(data) < HEADER_SIZE:
        raise MalformedFrameError(f"Short header: {len(data)} of {HEADER_SIZE} bytes")
    command, length, session_id, status, sequence, options = HEADER.unpack_from(data)
    if command not in _KNOWN_COMMANDS:
        raise MalformedFrameError(f"Unknown encapsulation command 0x{command:04X}")
    if options != 0:
        raise MalformedFrameError(f"Unexpected options field 0x{options:08X}")
    if length > MAX_FRAME_PAYLOAD:
        raise MalformedFrameError(f"Declared length out of range: {length}")
    return command, length, session_id, status, sequence, options


def decode_response(data: bytes) -> Frame:
    """Decode a complete frame (header plus exactly `length` payload bytes)."""
    command, length, session_id, status, sequence, options = decode_header(data)
    available = len(data) - HEADER_SIZE
    if length > available:
        raise MalformedFrameError(f"Declared length {length} exceeds available {available} bytes")
    if length < available:
        raise MalformedFrameError(f"{available - length} trailing bytes after frame")
    return Frame(
        command=command,
        session_id=session_id,
        status=status,
        sequence=sequence,
        payload=bytes(data[HEADER_SIZE:]),
        options=options,
    )


REGISTER_SESSION_DATA = struct.pack("<HH", PROTOCOL_VERSION, 0)


# ============================================================================
# Common Packet Format (SendRRData)
# ============================================================================


def encode_rr_data(message: bytes, timeout: int = 10) -> bytes:
    """Wrap a CIP message in a null-address / unconnected-data item pair."""
    return b"".join(
        (
            struct.pack("<IHH", 0, timeout, 2),
            struct.pack("<HH", _CPF_NULL_ADDRESS, 0),
            struct.pack("<HH", _CPF_UNCONNECTED_DATA, len(message)),
            message,
        )
    )


def decode_rr_data(payload: bytes) -> bytes:
    """Return the unconnected data item of a SendRRData payload."""
    if len(payload) < 8:
        raise MalformedFrameError(f"Short SendRRData payload: {len(payload)} bytes")
    _handle, _timeout, count = struct.unpack_from("<IHH", payload)
    offset = 8
    for _ in range(count):
        if offset + 4 > len(payload):
            raise MalformedFrameError("Truncated CPF item header")
        item_type, length = struct.unpack_from("<HH", payload, offset)
        offset += 4
        if offset + length > len(payload):
            raise MalformedFrameError(f"CPF item length {length} exceeds available bytes")
        if item_type == _CPF_UNCONNECTED_DATA:
            return bytes(payload[offset : offset + length])
        offset += length
    raise MalformedFrameError("No unconnected data item in SendRRData payload")


# ============================================================================
# EPATH segments
# ============================================================================


def symbolic_segment(name: str) -> bytes:
    """ANSI extended symbolic segment, padded to a word boundary."""
    raw = name.encode("ascii")
    if not raw or len(raw) > 255:
        raise ValueError(f"Symbol length out of range: {name!r}")
    seg = bytes((0x91, len(raw))) + raw
    if len(raw) % 2:
        seg += b"\x00"
    return seg


def element_segment(index: int) -> bytes:
    if index < 0:
        raise ValueError(f"Element index must be >= 0, got {index}")
    if index <= 0xFF:
        return bytes((0x28, index))
    if index <= 0xFFFF:
        return struct.pack("<BBH", 0x29, 0, index)
    if index <= 0xFFFFFFFF:
        return struct.pack("<BBI", 0x2A, 0, index)
    raise ValueError(f"Element index out of range: {index}")


def _logical_segment(kind: int, value: int) -> bytes:
    if 0 <= value <= 0xFF:
        return bytes((kind, value))
    if 0 <= value <= 0xFFFF:
        return struct.pack("<BBH", kind | 0x01, 0, value)
    raise ValueError(f"Logical segment value out of range: {value}")


def class_segment(class_code: int) -> bytes:
    return _logical_segment(0x20, class_code)


def instance_segment(instance: int) -> bytes:
    return _logical_segment(0x24, instance)


def attribute_segment(attribute: int) -> bytes:
    return _logical_segment(0x30, attribute)


def port_segment(port: int, link: int) -> bytes:
    if not (0 < port < 15) or not (0 <= link <= 0xFF):
        raise ValueError(f"Unsupported port segment: port={port} link={link}")
    return bytes((port, link))


MESSAGE_ROUTER_PATH = class_segment(ClassCode.MESSAGE_ROUTER) + instance_segment(1)
CONNECTION_MANAGER_PATH = class_segment(ClassCode.CONNECTION_MANAGER) + instance_segment(1)


def backplane_route(slot: int) -> bytes:
    """Route path to a processor on backplane port 1."""
    return port_segment(1, slot)


def decode_epath(path: bytes) -> list[tuple[str, int | str]]:
    """
    Split an EPATH into ("symbol", name), ("element", n), ("class", n),
    ("instance", n) and ("attribute", n) entries.
    """
    out: list[tuple[str, int | str]] = []
    i = 0
    logical = {0x20: "class", 0x24: "instance", 0x30: "attribute"}
    try:
        while i < len(path):
            seg = path[i]
            if seg == 0x91:
                length = path[i + 1]
                name = bytes(path[i + 2 : i + 2 + length])
                if len(name) != length:
                    raise MalformedFrameError("Truncated symbolic segment")
                out.append(("symbol", name.decode("ascii")))
                i += 2 + length + (length % 2)
            elif seg == 0x28:
                out.append(("element", path[i + 1]))
                i += 2
            elif seg == 0x29:
                out.append(("element", struct.unpack_from("<H", path, i + 2)[0]))
                i += 4
            elif seg == 0x2A:
                out.append(("element", struct.unpack_from("<I", path, i + 2)[0]))
                i += 6
            elif seg in logical:
                out.append((logical[seg], path[i + 1]))
                i += 2
            elif seg - 1 in logical:
                out.append((logical[seg - 1], struct.unpack_from("<H", path, i + 2)[0]))
                i += 4
            else:
                raise MalformedFrameError(f"Unsupported EPATH segment 0x{seg:02X}")
    except (IndexError, struct.error) as e:
        raise MalformedFrameError("Truncated EPATH") from e
    return out


# ============================================================================
# CIP message router
# ============================================================================


def encode_cip_request(service: int, path: bytes, data: bytes = b"") -> bytes:
    if len(path) % 2:
        raise ValueError("EPATH must be word aligned")
    return bytes((int(service), len(path) // 2)) + path + data


def decode_cip_request(message: bytes) -> tuple[int, bytes, bytes]:
    """Split a request into (service, path, data)."""
    if len(message) < 2:
        raise MalformedFrameError("Short CIP request")
    service, words = message[0], message[1]
    end = 2 + words * 2
    if end > len(message):
        raise MalformedFrameError(f"Request path of {words} words exceeds available bytes")
    return service, bytes(message[2:end]), bytes(message[end:])


def encode_cip_reply(service: int, status: int = 0, data: bytes = b"", extended_status: Sequence[int] = ()) -> bytes:
    header = struct.pack("<BBBB", int(service) | 0x80, 0, status, len(extended_status))
    ext = struct.pack(f"<{len(extended_status)}H", *extended_status)
    return header + ext + data


def decode_cip_reply(message: bytes) -> CIPReply:
    if len(message) < 4:
        raise MalformedFrameError(f"Short CIP reply: {len(message)} bytes")
    service, _reserved, status, ext_words = struct.unpack_from("<BBBB", message)
    if not service & 0x80:
        raise MalformedFrameError(f"Reply bit missing on service 0x{service:02X}")
    end = 4 + ext_words * 2
    if end > len(message):
        raise MalformedFrameError("Extended status exceeds available bytes")
    extended = struct.unpack_from(f"<{ext_words}H", message, 4)
    return CIPReply(
        service=service & 0x7F,
        status=status,
        extended_status=tuple(extended),
        data=bytes(message[end:]),
    )


def pack_services(parts: Sequence[bytes]) -> bytes:
    """Count + offset table + concatenated requests or replies."""
    count = len(parts)
    offsets = []
    position = 2 + 2 * count
    for part in parts:
        offsets.append(position)
        position += len(part)
    return struct.pack(f"<H{count}H", count, *offsets) + b"".join(parts)


def unpack_services(data: bytes) -> list[bytes]:
    if len(data) < 2:
        raise MalformedFrameError("Short Multiple Service data")
    count = struct.unpack_from("<H", data)[0]
    table_end = 2 + 2 * count
    if table_end > len(data):
        raise MalformedFrameError(f"Offset table for {count} services exceeds available bytes")
    bounds = list(struct.unpack_from(f"<{count}H", data, 2)) + [len(data)]
    parts = []
    for start, end in zip(bounds, bounds[1:]):
        if not (table_end <= start <= end <= len(data)):
            raise MalformedFrameError(f"Service offset out of range: {start}")
        parts.append(bytes(data[start:end]))
    return parts


def encode_multiple_service(requests: Sequence[bytes]) -> bytes:
    return encode_cip_request(Service.MULTIPLE_SERVICE, MESSAGE_ROUTER_PATH, pack_services(requests))


def decode_multiple_service(data: bytes) -> list[CIPReply]:
    return [decode_cip_reply(part) for part in unpack_services(data)]


def encode_unconnected_send(message: bytes, route_path: bytes, priority_tick: int = 0x0A, timeout_ticks: int = 0x0E) -> bytes:
    """Wrap a message for the Connection Manager so it is forwarded along route_path."""
    data = struct.pack("<BBH", priority_tick, timeout_ticks, len(message)) + message
    if len(message) % 2:
        data += b"\x00"
    data += struct.pack("<BB", len(route_path) // 2, 0) + route_path
    return encode_cip_request(Service.UNCONNECTED_SEND, CONNECTION_MANAGER_PATH, data)
