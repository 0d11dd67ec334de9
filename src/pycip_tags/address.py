"""Parse symbolic Logix tag paths into request fragments (purely syntactic)."""

import re
from dataclasses import dataclass

from . import codec
from .errors import AddressError

# Base names may carry module-style colons, e.g. Local:1:I
_BASE_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_:]*")
_NAME_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
# One [subscripts] or .member accessor
_TOKEN_PATTERN = re.compile(r"\[([^\]]*)\]|\.([A-Za-z_][A-Za-z0-9_]*)")
_PROGRAM_PREFIX = re.compile(r"^Program:([A-Za-z_][A-Za-z0-9_]*)\.", re.IGNORECASE)

MAX_ARRAY_DIMS = 3


@dataclass(frozen=True)
class MemberSegment:
    name: str

    def __str__(self) -> str:
        return f".{self.name}"


@dataclass(frozen=True)
class IndexSegment:
    indices: tuple[int, ...]

    def __str__(self) -> str:
        return "[" + ",".join(str(i) for i in self.indices) + "]"


Segment = MemberSegment | IndexSegment


@dataclass(frozen=True)
class RequestFragment:
    """A parsed tag path and its encoded symbolic request path."""

    path: str
    program: str | None
    base: str
    segments: tuple[Segment, ...]
    epath: bytes

    @property
    def full_path(self) -> str:
        return f"Program:{self.program}.{self.path}" if self.program else self.path

    @property
    def scope(self) -> str | None:
        """Symbol scope used for metadata lookups (None = controller scope)."""
        return f"Program:{self.program}" if self.program else None


def _normalize_program(path: str, program: str) -> str:
    name = program.strip()
    if name.lower().startswith("program:"):
        name = name[len("program:") :]
    if not _NAME_PATTERN.fullmatch(name):
        raise AddressError(path, f"Invalid program name: {program!r}")
    return name


def _parse_indices(path: str, text: str) -> tuple[int, ...]:
    parts = [p.strip() for p in text.split(",")]
    if not 1 <= len(parts) <= MAX_ARRAY_DIMS:
        raise AddressError(path, f"Expected 1-{MAX_ARRAY_DIMS} subscripts, got [{text}]")
    indices = []
    for part in parts:
        if not part.isdigit():
            raise AddressError(path, f"Array subscript must be a non-negative integer, got {part!r}")
        value = int(part)
        if value > 0xFFFFFFFF:
            raise AddressError(path, f"Array subscript out of range: {value}")
        indices.append(value)
    return tuple(indices)


def resolve(path: str, program: str | None = None) -> RequestFragment:
    """
    Split a tag path into base name, subscripts and member accessors.

    - An optional ``Program:<name>.`` prefix or the `program` argument selects
      program scope; when both are given they must agree.
    - Subscripts and members may interleave in any order, e.g.
      ``TestUDT2[0].UDT1[0].STRING1``.

    Does not contact the controller. Raises AddressError for malformed paths.
    """
    s = path.strip()
    if not s:
        raise AddressError(path, "Tag path cannot be empty")

    m = _PROGRAM_PREFIX.match(s)
    if m:
        prefixed = m.group(1)
        if program is not None and _normalize_program(path, program).lower() != prefixed.lower():
            raise AddressError(path, f"Path scope {prefixed!r} conflicts with program {program!r}")
        program = prefixed
        s = s[m.end() :]
    elif program is not None:
        program = _normalize_program(path, program)

    base_match = _BASE_PATTERN.match(s)
    if not base_match:
        raise AddressError(path, f"Malformed tag name: {path!r}")
    base = base_match.group(0)

    segments: list[Segment] = []
    pos = base_match.end()
    while pos < len(s):
        tm = _TOKEN_PATTERN.match(s, pos)
        if not tm:
            raise AddressError(path, f"Unexpected {s[pos:]!r} in {path!r}")
        if tm.group(2) is None:
            segments.append(IndexSegment(_parse_indices(path, tm.group(1))))
        else:
            segments.append(MemberSegment(tm.group(2)))
        pos = tm.end()

    try:
        parts = [codec.symbolic_segment(f"Program:{program}")] if program else []
        parts.append(codec.symbolic_segment(base))
        for seg in segments:
            if isinstance(seg, IndexSegment):
                parts.extend(codec.element_segment(i) for i in seg.indices)
            else:
                parts.append(codec.symbolic_segment(seg.name))
    except ValueError as e:
        raise AddressError(path, str(e)) from e

    return RequestFragment(
        path=s,
        program=program,
        base=base,
        segments=tuple(segments),
        epath=b"".join(parts),
    )


def validate_hints(path: str, array_dims: int | None, array_size: int | None) -> None:
    """Range-check caller-provided array hints before a tag is registered."""
    if array_dims is not None and not 0 <= array_dims <= MAX_ARRAY_DIMS:
        raise AddressError(path, f"array_dims must be 0-{MAX_ARRAY_DIMS}, got {array_dims}")
    if array_size is not None:
        if array_size < 1:
            raise AddressError(path, f"array_size must be >= 1, got {array_size}")
        if array_dims == 0:
            raise AddressError(path, "array_size given for a scalar (array_dims=0)")
