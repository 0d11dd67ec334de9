"""
Tag metadata directory: symbol and template uploads, path-to-type resolution.

Symbols are uploaded once per scope (controller, or one program) with Get
Instance Attribute List on the Symbol object. Structure templates are uploaded
once per template instance from the Template object. Resolving a request
fragment walks base symbol -> subscripts -> members against that metadata.
"""

import logging
import math
import struct
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from .address import IndexSegment, RequestFragment
from .codec import SUCCESS
from .datatypes import BOOL, ArrayType, AtomicType, DataType, StructMember, StructType, atomic_type, reply_signature
from .errors import CIPServiceError, MalformedFrameError, TypeMismatchError, UnknownTagError
from .types import ClassCode

if TYPE_CHECKING:
    from .client import CIPClient

logger = logging.getLogger(__name__)

# Symbol attributes: 1 name, 2 type, 8 dimensions
SYMBOL_ATTRIBUTES = (1, 2, 8)
# Template attributes: 4 definition size (words), 5 structure size, 2 member count, 1 handle
TEMPLATE_ATTRIBUTES = (4, 5, 2, 1)
_TEMPLATE_ATTRIBUTE_FORMATS = {1: "<H", 2: "<H", 4: "<I", 5: "<I"}

MEMBER_INFO = struct.Struct("<HHI")

_STRUCT_BIT = 0x8000
_SYSTEM_BIT = 0x1000
_TEMPLATE_MASK = 0x0FFF
_ATOMIC_MASK = 0x00FF

_HIDDEN_PREFIXES = ("ZZZZZZZZZZ", "__")


@dataclass(frozen=True)
class SymbolInfo:
    """One entry of the controller's symbol table."""

    instance_id: int
    name: str
    symbol_type: int
    dimensions: tuple[int, int, int]

    @property
    def is_struct(self) -> bool:
        return bool(self.symbol_type & _STRUCT_BIT)

    @property
    def is_system(self) -> bool:
        return bool(self.symbol_type & _SYSTEM_BIT)

    @property
    def dim_count(self) -> int:
        return (self.symbol_type >> 13) & 0x3

    @property
    def array_dims(self) -> tuple[int, ...]:
        return self.dimensions[: self.dim_count]


@dataclass(frozen=True)
class TemplateInfo:
    instance_id: int
    definition_size: int
    structure_size: int
    member_count: int
    handle: int


@dataclass(frozen=True)
class ResolvedType:
    """
    What a tag path addresses: the element type, the array dimensions left
    after its subscripts (empty for a scalar) and how many elements to request.
    """

    element: AtomicType | StructType
    dims: tuple[int, ...]
    count: int

    @property
    def is_array(self) -> bool:
        return bool(self.dims)

    @property
    def value_type(self) -> DataType:
        if self.is_array:
            return ArrayType(self.element, self.count)
        return self.element

    @property
    def signature(self) -> tuple[int, int | None]:
        return reply_signature(self.element)

    @property
    def name(self) -> str:
        return self.value_type.name


def parse_symbol_list(data: bytes) -> list[SymbolInfo]:
    """Parse a Get Instance Attribute List reply for attributes 1, 2 and 8."""
    out: list[SymbolInfo] = []
    offset = 0
    try:
        while offset < len(data):
            instance_id, name_len = struct.unpack_from("<IH", data, offset)
            offset += 6
            name = bytes(data[offset : offset + name_len])
            if len(name) != name_len:
                raise MalformedFrameError("Truncated symbol name")
            offset += name_len
            symbol_type, d1, d2, d3 = struct.unpack_from("<HIII", data, offset)
            offset += 14
            out.append(SymbolInfo(instance_id, name.decode("ascii", errors="replace"), symbol_type, (d1, d2, d3)))
    except struct.error as e:
        raise MalformedFrameError("Truncated symbol list") from e
    return out


def parse_template_attributes(instance_id: int, data: bytes) -> TemplateInfo:
    values: dict[int, int] = {}
    try:
        count = struct.unpack_from("<H", data)[0]
        offset = 2
        for _ in range(count):
            attr_id, status = struct.unpack_from("<HH", data, offset)
            offset += 4
            if status != SUCCESS:
                raise CIPServiceError(f"Template {instance_id} attribute {attr_id} unavailable", status=status)
            fmt = _TEMPLATE_ATTRIBUTE_FORMATS.get(attr_id)
            if fmt is None:
                raise MalformedFrameError(f"Unexpected template attribute {attr_id}")
            values[attr_id] = struct.unpack_from(fmt, data, offset)[0]
            offset += struct.calcsize(fmt)
    except struct.error as e:
        raise MalformedFrameError(f"Truncated attributes for template {instance_id}") from e
    missing = set(TEMPLATE_ATTRIBUTES) - set(values)
    if missing:
        raise MalformedFrameError(f"Template {instance_id} reply lacks attributes {sorted(missing)}")
    return TemplateInfo(
        instance_id=instance_id,
        definition_size=values[4],
        structure_size=values[5],
        member_count=values[2],
        handle=values[1],
    )


def parse_template(
    info: TemplateInfo,
    raw: bytes,
    type_for: Callable[[int], DataType],
) -> StructType:
    """
    Build a StructType from a template definition.

    The definition is member_count records of (info, type, offset) followed by
    NUL-separated names; the first name is the template's own (``NAME;...``).
    For BOOL members `info` is a bit number, otherwise a non-zero `info` is an
    array length.
    """
    info_len = info.member_count * MEMBER_INFO.size
    if len(raw) < info_len:
        raise MalformedFrameError(f"Template {info.instance_id} definition is truncated")
    records = [MEMBER_INFO.unpack_from(raw, i * MEMBER_INFO.size) for i in range(info.member_count)]
    names = [n.decode("ascii", errors="replace") for n in raw[info_len:].split(b"\x00")]
    if len(names) < info.member_count + 1:
        raise MalformedFrameError(f"Template {info.instance_id} is missing member names")
    template_name = names[0].split(";", 1)[0]
    if template_name == "ASCIISTRING82":
        template_name = "STRING"

    members = []
    for (member_info, type_word, offset), name in zip(records, names[1 : info.member_count + 1]):
        hidden = not name or name.startswith(_HIDDEN_PREFIXES)
        if not type_word & _STRUCT_BIT and (type_word & _ATOMIC_MASK) == BOOL.code:
            if offset >= info.structure_size or member_info > 7:
                raise MalformedFrameError(
                    f"Template {info.instance_id} member {name!r} bit {member_info} at offset {offset} "
                    f"lies outside {info.structure_size} bytes"
                )
            members.append(StructMember(name, BOOL, offset, bit=member_info, hidden=hidden))
            continue
        data_type = type_for(type_word)
        if member_info:
            data_type = ArrayType(data_type, member_info)
        if offset + data_type.size > info.structure_size:
            raise MalformedFrameError(
                f"Template {info.instance_id} member {name!r} ({data_type.size} bytes at offset {offset}) "
                f"overruns {info.structure_size} bytes"
            )
        members.append(StructMember(name, data_type, offset, hidden=hidden))

    return StructType(
        name=template_name,
        handle=info.handle,
        size=info.structure_size,
        members=tuple(members),
        instance_id=info.instance_id,
    )


class TagDirectory:
    """
    Cached controller metadata. Symbol tables are keyed by scope
    (None or "Program:<name>"), templates by instance id.
    """

    def __init__(self, client: "CIPClient") -> None:
        self._client = client
        self._symbols: dict[str | None, dict[str, SymbolInfo]] = {}
        self._templates: dict[int, StructType] = {}
        self._lock = threading.RLock()

    def symbols(self, scope: str | None = None) -> dict[str, SymbolInfo]:
        with self._lock:
            if scope not in self._symbols:
                self._symbols[scope] = self._upload_symbols(scope)
            return self._symbols[scope]

    def _upload_symbols(self, scope: str | None) -> dict[str, SymbolInfo]:
        table: dict[str, SymbolInfo] = {}
        start = 0
        while True:
            reply = self._client.get_instance_attribute_list(scope, start, SYMBOL_ATTRIBUTES)
            entries = parse_symbol_list(reply.data)
            for entry in entries:
                table[entry.name.lower()] = entry
            if reply.status == SUCCESS or not entries:
                break
            start = entries[-1].instance_id + 1
        logger.info("Uploaded %d symbols for %s scope", len(table), scope or "controller")
        return table

    def symbol(self, name: str, scope: str | None = None) -> SymbolInfo:
        info = self.symbols(scope).get(name.lower())
        if info is None:
            where = scope or "controller"
            raise UnknownTagError(name, f"Tag {name!r} not found in {where} scope")
        return info

    def template(self, instance_id: int) -> StructType:
        with self._lock:
            if instance_id not in self._templates:
                reply = self._client.get_attribute_list(ClassCode.TEMPLATE, instance_id, TEMPLATE_ATTRIBUTES)
                info = parse_template_attributes(instance_id, reply.data)
                raw = self._client.read_template(instance_id, info.definition_size)
                template = parse_template(info, raw, self.type_for)
                self._templates[instance_id] = template
                logger.debug("Template %d is %s (%d bytes)", instance_id, template.name, template.size)
            return self._templates[instance_id]

    def type_for(self, type_word: int) -> AtomicType | StructType:
        """Map a symbol or member type word to a data type."""
        if type_word & _STRUCT_BIT:
            return self.template(type_word & _TEMPLATE_MASK)
        return atomic_type(type_word & _ATOMIC_MASK)

    def resolve(
        self,
        fragment: RequestFragment,
        array_dims: int | None = None,
        array_size: int | None = None,
    ) -> ResolvedType:
        """
        Resolve what `fragment` addresses. Array hints must agree with the
        controller's metadata; any conflict raises TypeMismatchError.
        """
        tag = fragment.full_path
        sym = self.symbol(fragment.base, fragment.scope)
        current: AtomicType | StructType = self.type_for(sym.symbol_type)
        dims = sym.array_dims
        where = fragment.base

        for seg in fragment.segments:
            if isinstance(seg, IndexSegment):
                if not dims:
                    raise TypeMismatchError(f"{where} is not an array", tag=tag)
                if len(seg.indices) != len(dims):
                    raise TypeMismatchError(f"{where} has {len(dims)} dimension(s), got {seg}", tag=tag)
                for index, size in zip(seg.indices, dims):
                    if index >= size:
                        raise TypeMismatchError(f"{where}{seg} out of range for dimensions {list(dims)}", tag=tag)
                dims = ()
            else:
                if dims:
                    raise TypeMismatchError(f"{where} is an array; subscript it before .{seg.name}", tag=tag)
                if not isinstance(current, StructType):
                    raise TypeMismatchError(f"{where} is {current.name}, it has no member {seg.name!r}", tag=tag)
                member = current.member(seg.name)
                if member is None:
                    raise TypeMismatchError(f"{current.name} has no member {seg.name!r}", tag=tag)
                if member.bit is not None:
                    current, dims = BOOL, ()
                elif isinstance(member.data_type, ArrayType):
                    current, dims = member.data_type.element, (member.data_type.length,)
                else:
                    current, dims = member.data_type, ()
            where += str(seg)

        total = math.prod(dims) if dims else 1
        if array_dims is not None and array_dims != len(dims):
            raise TypeMismatchError(
                f"{tag}: array_dims={array_dims} but controller reports {len(dims)} dimension(s)", tag=tag
            )
        if array_size is not None:
            if not dims:
                raise TypeMismatchError(f"{tag}: array_size given but the tag is not an array", tag=tag)
            if array_size > total:
                raise TypeMismatchError(f"{tag}: array_size={array_size} exceeds {total} elements", tag=tag)
        count = array_size if array_size is not None else total
        return ResolvedType(element=current, dims=dims, count=count)
