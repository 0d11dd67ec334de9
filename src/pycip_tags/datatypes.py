"""
Type decoder/encoder: maps controller type codes to Python values and back.

Atomic types are fixed-width little-endian scalars. Structures (UDTs and the
predefined STRING) are described by templates uploaded from the controller;
their BOOL members are bit-packed into hidden host bytes. A structure whose
visible members are exactly LEN and DATA (SINT array) is treated as a
length-prefixed string and maps to ``str``.
"""

import struct
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, ClassVar

from .codec import STRUCT_TYPE_CODE
from .errors import MalformedFrameError, TypeMismatchError, UnsupportedTypeError

STRING_ENCODING = "latin-1"


@dataclass(frozen=True)
class AtomicType:
    """Fixed-width scalar with a one-byte CIP type code."""

    code: int
    name: str
    fmt: str

    @property
    def size(self) -> int:
        return struct.calcsize(self.fmt)

    @property
    def is_float(self) -> bool:
        return self.fmt[-1] in "fd"


BOOL = AtomicType(0xC1, "BOOL", "<B")
SINT = AtomicType(0xC2, "SINT", "<b")
INT = AtomicType(0xC3, "INT", "<h")
DINT = AtomicType(0xC4, "DINT", "<i")
LINT = AtomicType(0xC5, "LINT", "<q")
USINT = AtomicType(0xC6, "USINT", "<B")
UINT = AtomicType(0xC7, "UINT", "<H")
UDINT = AtomicType(0xC8, "UDINT", "<I")
ULINT = AtomicType(0xC9, "ULINT", "<Q")
REAL = AtomicType(0xCA, "REAL", "<f")
LREAL = AtomicType(0xCB, "LREAL", "<d")
BYTE = AtomicType(0xD1, "BYTE", "<B")
WORD = AtomicType(0xD2, "WORD", "<H")
DWORD = AtomicType(0xD3, "DWORD", "<I")
LWORD = AtomicType(0xD4, "LWORD", "<Q")

ATOMIC_TYPES: dict[int, AtomicType] = {
    t.code: t for t in (BOOL, SINT, INT, DINT, LINT, USINT, UINT, UDINT, ULINT, REAL, LREAL, BYTE, WORD, DWORD, LWORD)
}


def atomic_type(code: int) -> AtomicType:
    """Look up an atomic type; unknown codes are never guessed."""
    try:
        return ATOMIC_TYPES[code]
    except KeyError:
        raise UnsupportedTypeError(code) from None


@dataclass(frozen=True)
class ArrayType:
    element: "DataType"
    length: int

    @property
    def size(self) -> int:
        return self.element.size * self.length

    @property
    def name(self) -> str:
        return f"{self.element.name}[{self.length}]"


@dataclass(frozen=True)
class StructMember:
    name: str
    data_type: "DataType"
    offset: int
    bit: int | None = None
    hidden: bool = False


@dataclass(frozen=True)
class StructType:
    """A template: ordered members at fixed byte offsets inside `size` bytes."""

    code: ClassVar[int] = STRUCT_TYPE_CODE

    name: str
    handle: int
    size: int
    members: tuple[StructMember, ...]
    instance_id: int | None = None

    @property
    def visible_members(self) -> tuple[StructMember, ...]:
        return tuple(m for m in self.members if not m.hidden)

    def member(self, name: str) -> StructMember | None:
        key = name.lower()
        for m in self.members:
            if m.name.lower() == key and not m.hidden:
                return m
        return None

    @property
    def is_string(self) -> bool:
        names = [m.name.upper() for m in self.visible_members]
        if names != ["LEN", "DATA"]:
            return False
        data = self.member("DATA")
        return (
            data is not None
            and isinstance(data.data_type, ArrayType)
            and data.data_type.element == SINT
        )

    @property
    def string_capacity(self) -> int:
        data = self.member("DATA")
        if data is None or not isinstance(data.data_type, ArrayType):
            return 0
        return data.data_type.length


DataType = AtomicType | ArrayType | StructType


def element_type(data_type: DataType) -> AtomicType | StructType:
    while isinstance(data_type, ArrayType):
        data_type = data_type.element
    return data_type


def _string_members(data_type: StructType) -> tuple[StructMember, StructMember]:
    len_member = data_type.member("LEN")
    data_member = data_type.member("DATA")
    if len_member is None or data_member is None:
        raise TypeMismatchError(f"{data_type.name} is not a string type")
    return len_member, data_member


def reply_signature(data_type: DataType) -> tuple[int, int | None]:
    """(type code, structure handle) a Read Tag reply carries for this type."""
    element = element_type(data_type)
    if isinstance(element, StructType):
        return STRUCT_TYPE_CODE, element.handle
    return element.code, None


# ============================================================================
# Decoding
# ============================================================================


def decode(data_type: DataType, raw: bytes) -> Any:
    """Decode exactly data_type.size bytes; any other length is a malformed reply."""
    if len(raw) != data_type.size:
        raise MalformedFrameError(f"{data_type.name} needs {data_type.size} bytes, got {len(raw)}")
    try:
        return _decode_at(data_type, raw, 0)
    except (struct.error, IndexError) as e:
        raise MalformedFrameError(f"{data_type.name} layout does not fit its {data_type.size} bytes") from e


def _decode_at(data_type: DataType, buf: bytes, offset: int) -> Any:
    if isinstance(data_type, AtomicType):
        value = struct.unpack_from(data_type.fmt, buf, offset)[0]
        return bool(value) if data_type == BOOL else value
    if isinstance(data_type, ArrayType):
        step = data_type.element.size
        return [_decode_at(data_type.element, buf, offset + i * step) for i in range(data_type.length)]
    if data_type.is_string:
        return _decode_string(data_type, buf, offset)
    value: dict[str, Any] = {}
    for m in sorted(data_type.members, key=lambda m: (m.offset, m.bit or 0)):
        if m.hidden:
            continue
        if m.bit is not None:
            value[m.name] = bool((buf[offset + m.offset] >> m.bit) & 1)
        else:
            value[m.name] = _decode_at(m.data_type, buf, offset + m.offset)
    return value


def _decode_string(data_type: StructType, buf: bytes, offset: int) -> str:
    len_member, data_member = _string_members(data_type)
    length = _decode_at(len_member.data_type, buf, offset + len_member.offset)
    length = max(0, min(int(length), data_type.string_capacity))
    start = offset + data_member.offset
    return bytes(buf[start : start + length]).decode(STRING_ENCODING)


# ============================================================================
# Encoding
# ============================================================================


def encode(data_type: DataType, value: Any) -> bytes:
    """
    Encode a value after validating its shape against data_type.

    Raises TypeMismatchError (and produces nothing) on the first mismatch.
    """
    buf = bytearray(data_type.size)
    _encode_into(data_type, value, buf, 0, "value")
    return bytes(buf)


def _encode_into(data_type: DataType, value: Any, buf: bytearray, offset: int, where: str) -> None:
    if isinstance(data_type, AtomicType):
        _encode_atomic(data_type, value, buf, offset, where)
    elif isinstance(data_type, ArrayType):
        if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
            raise TypeMismatchError(f"{where}: expected a list of {data_type.length} elements")
        if len(value) != data_type.length:
            raise TypeMismatchError(f"{where}: expected {data_type.length} elements, got {len(value)}")
        step = data_type.element.size
        for i, item in enumerate(value):
            _encode_into(data_type.element, item, buf, offset + i * step, f"{where}[{i}]")
    elif data_type.is_string:
        _encode_string(data_type, value, buf, offset, where)
    else:
        _encode_struct(data_type, value, buf, offset, where)


def _encode_atomic(data_type: AtomicType, value: Any, buf: bytearray, offset: int, where: str) -> None:
    if data_type == BOOL:
        if not isinstance(value, (bool, int)):
            raise TypeMismatchError(f"{where}: BOOL needs a bool, got {type(value).__name__}")
        struct.pack_into(data_type.fmt, buf, offset, 1 if value else 0)
        return
    if data_type.is_float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeMismatchError(f"{where}: {data_type.name} needs a number, got {type(value).__name__}")
        value = float(value)
    elif isinstance(value, bool) or not isinstance(value, int):
        raise TypeMismatchError(f"{where}: {data_type.name} needs an int, got {type(value).__name__}")
    try:
        struct.pack_into(data_type.fmt, buf, offset, value)
    except (struct.error, OverflowError) as e:
        raise TypeMismatchError(f"{where}: {value!r} out of range for {data_type.name}") from e


def _encode_string(data_type: StructType, value: Any, buf: bytearray, offset: int, where: str) -> None:
    if not isinstance(value, str):
        raise TypeMismatchError(f"{where}: {data_type.name} needs a str, got {type(value).__name__}")
    try:
        raw = value.encode(STRING_ENCODING)
    except UnicodeEncodeError as e:
        raise TypeMismatchError(f"{where}: string is not {STRING_ENCODING} encodable") from e
    if len(raw) > data_type.string_capacity:
        raise TypeMismatchError(f"{where}: {len(raw)} characters exceed {data_type.name} capacity {data_type.string_capacity}")
    len_member, data_member = _string_members(data_type)
    _encode_into(len_member.data_type, len(raw), buf, offset + len_member.offset, where)
    start = offset + data_member.offset
    buf[start : start + len(raw)] = raw


def _encode_struct(data_type: StructType, value: Any, buf: bytearray, offset: int, where: str) -> None:
    if not isinstance(value, Mapping):
        raise TypeMismatchError(f"{where}: {data_type.name} needs a dict, got {type(value).__name__}")
    expected = {m.name for m in data_type.visible_members}
    given = set(value)
    if given != expected:
        missing = sorted(expected - given)
        extra = sorted(str(k) for k in given - expected)
        raise TypeMismatchError(f"{where}: {data_type.name} members differ (missing={missing}, unexpected={extra})")
    for m in data_type.visible_members:
        item = value[m.name]
        if m.bit is not None:
            if not isinstance(item, (bool, int)):
                raise TypeMismatchError(f"{where}.{m.name}: BOOL needs a bool")
            if item:
                buf[offset + m.offset] |= 1 << m.bit
            else:
                buf[offset + m.offset] &= ~(1 << m.bit) & 0xFF
        else:
            _encode_into(m.data_type, item, buf, offset + m.offset, f"{where}.{m.name}")
