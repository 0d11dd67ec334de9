"""Shared fixtures: an in-memory Logix controller behind a fake transport."""

import math
import struct
import threading
from dataclasses import dataclass, field

import pytest

from pycip_tags import codec
from pycip_tags.address import resolve
from pycip_tags.client import CIPClient
from pycip_tags.config import ControllerConfig, ReconnectPolicy
from pycip_tags.errors import ResponseTimeoutError, TransportError
from pycip_tags.types import Command

ATOMIC_SIZES = {
    0xC1: 1, 0xC2: 1, 0xC3: 2, 0xC4: 4, 0xC5: 8, 0xC6: 1, 0xC7: 2, 0xC8: 4,
    0xC9: 8, 0xCA: 4, 0xCB: 8, 0xD1: 1, 0xD2: 2, 0xD3: 4, 0xD4: 8,
}

STRING_TYPE = 0x8FCE
UDT1_TYPE = 0x8100
UDT2_TYPE = 0x8101
ARRAY_1D = 0x2000


def string_bytes(text: str, capacity: int = 82) -> bytes:
    raw = text.encode("latin-1")
    return struct.pack("<i", len(raw)) + raw.ljust(capacity, b"\x00")


class CIPFault(Exception):
    def __init__(self, status: int, extended: tuple[int, ...] = ()) -> None:
        self.status = status
        self.extended = extended
        super().__init__(f"CIP status 0x{status:02X}")


@dataclass
class FakeTemplate:
    instance_id: int
    name: str
    handle: int
    size: int
    members: list[tuple[str, int, int, int]]  # name, info, type word, offset

    def definition(self) -> bytes:
        records = b"".join(struct.pack("<HHI", info, type_word, offset) for _n, info, type_word, offset in self.members)
        names = f"{self.name};n\x00".encode() + b"".join(n.encode() + b"\x00" for n, *_ in self.members)
        raw = records + names
        words = -(-(len(raw) + 21) // 4)
        return raw + bytes(words * 4 - 21 - len(raw))

    @property
    def definition_size(self) -> int:
        return (len(self.definition()) + 21) // 4


@dataclass
class FakeSymbol:
    instance_id: int
    name: str
    type_word: int
    dims: tuple[int, int, int]
    data: bytearray = field(default_factory=bytearray)


class FakeLogix:
    """
    A small Logix controller: symbols with backing memory, templates, and the
    services the client uses. Requests are answered synchronously from send().
    """

    def __init__(self, page_size: int = 3, fragment_size: int = 480, template_page: int = 60) -> None:
        self.page_size = page_size
        self.fragment_size = fragment_size
        self.template_page = template_page
        self.templates: dict[int, FakeTemplate] = {}
        self.scopes: dict[str | None, list[FakeSymbol]] = {None: []}
        self.session_id = 0x00C0FFEE
        self.registered = 0
        self.unregistered = 0
        self.services: list[int] = []
        self.transports: list["FakeTransport"] = []
        # fault injection
        self.refuse_connect = False
        self.fail_sends = 0
        self.drop_responses = False
        self.stale_frames: list[bytes] = []
        self.service_errors: dict[int, int] = {}
        self.raw_replies: dict[int, bytes] = {}
        self.read_errors: dict[str, int] = {}
        self.gate: threading.Event | None = None
        self.in_flight = threading.Event()
        self._next_instance = 1
        self._lock = threading.Lock()

    # -- model ----------------------------------------------------------

    def add_template(self, template: FakeTemplate) -> None:
        self.templates[template.instance_id] = template

    def element_size(self, type_word: int) -> int:
        if type_word & 0x8000:
            return self.templates[type_word & 0x0FFF].size
        return ATOMIC_SIZES[type_word & 0xFF]

    def add_symbol(self, name: str, type_word: int, dims: tuple[int, int, int] = (0, 0, 0), scope: str | None = None) -> FakeSymbol:
        count = math.prod(d for d in dims if d) if any(dims) else 1
        sym = FakeSymbol(self._next_instance, name, type_word, dims)
        sym.data = bytearray(self.element_size(type_word & ~0x6000) * count)
        self._next_instance += 1
        self.scopes.setdefault(scope, []).append(sym)
        return sym

    def _scope(self, name: str | None) -> list[FakeSymbol]:
        if name is None:
            return self.scopes[None]
        for key, symbols in self.scopes.items():
            if key is not None and key.lower() == name.lower():
                return symbols
        raise CIPFault(0x05)

    def _locate(self, entries: list) -> tuple[FakeSymbol, int, int, int]:
        """Walk an EPATH; returns (symbol, element type word, byte offset, elements available)."""
        items = list(entries)
        scope = None
        if items and items[0][0] == "symbol" and str(items[0][1]).lower().startswith("program:"):
            scope = items.pop(0)[1]
        if not items or items[0][0] != "symbol":
            raise CIPFault(0x04)
        base = str(items.pop(0)[1])
        sym = next((s for s in self._scope(scope) if s.name.lower() == base.lower()), None)
        if sym is None:
            raise CIPFault(0x05)
        if base.lower() in self.read_errors:
            raise CIPFault(self.read_errors[base.lower()])
        type_word = sym.type_word & ~0x6000
        dim_count = (sym.type_word >> 13) & 0x3
        dims = list(sym.dims[:dim_count])
        available = math.prod(dims) if dims else 1
        offset = 0
        i = 0
        while i < len(items):
            if items[i][0] == "element":
                indices = []
                while i < len(items) and items[i][0] == "element":
                    indices.append(items[i][1])
                    i += 1
                if not dims or len(indices) != len(dims) or any(ix >= d for ix, d in zip(indices, dims)):
                    raise CIPFault(0x05)
                linear = 0
                for ix, d in zip(indices, dims):
                    linear = linear * d + ix
                offset += linear * self.element_size(type_word)
                available = math.prod(dims) - linear
                dims = []
                continue
            if dims or not type_word & 0x8000:
                raise CIPFault(0x05)
            template = self.templates[type_word & 0x0FFF]
            name = str(items[i][1]).lower()
            member = next((m for m in template.members if m[0].lower() == name), None)
            if member is None:
                raise CIPFault(0x05)
            _name, info, member_type, member_offset = member
            offset += member_offset
            type_word = member_type
            dims = [info] if info and (member_type & 0x80FF) != 0xC1 else []
            available = info or 1
            i += 1
        return sym, type_word, offset, available

    def type_field(self, type_word: int) -> bytes:
        if type_word & 0x8000:
            return struct.pack("<HH", codec.STRUCT_TYPE_CODE, self.templates[type_word & 0x0FFF].handle)
        return struct.pack("<H", type_word & 0xFF)

    def poke(self, path: str, raw: bytes) -> None:
        """Overwrite memory behind a tag path."""
        sym, _t, offset, _a = self._locate(codec.decode_epath(resolve(path).epath))
        with self._lock:
            sym.data[offset : offset + len(raw)] = raw

    def peek(self, path: str, size: int) -> bytes:
        sym, _t, offset, _a = self._locate(codec.decode_epath(resolve(path).epath))
        return bytes(sym.data[offset : offset + size])

    # -- wire -----------------------------------------------------------

    def transport_factory(self, host: str, port: int, timeout: float) -> "FakeTransport":
        return FakeTransport(self)

    def handle_frame(self, data: bytes) -> bytes | None:
        command, _length, session, _status, sequence, _options = codec.HEADER.unpack_from(data)
        payload = data[codec.HEADER_SIZE :]
        if command == Command.REGISTER_SESSION:
            self.registered += 1
            return codec.encode_frame(command, self.session_id, sequence, payload)
        if command == Command.UNREGISTER_SESSION:
            self.unregistered += 1
            return None
        if session != self.session_id:
            return codec.encode_frame(command, session, sequence, status=0x64)
        reply = self.handle_cip(codec.decode_rr_data(payload))
        return codec.encode_frame(command, session, sequence, codec.encode_rr_data(reply))

    def handle_cip(self, message: bytes) -> bytes:
        service, path, data = codec.decode_cip_request(message)
        entries = codec.decode_epath(path)
        self.services.append(service)
        if service in self.service_errors:
            return codec.encode_cip_reply(service, self.service_errors[service])
        if service in self.raw_replies:
            return self.raw_replies[service]
        try:
            if service == 0x52 and entries[:1] == [("class", 0x06)]:
                size = struct.unpack_from("<H", data, 2)[0]
                return self.handle_cip(data[4 : 4 + size])
            if service == 0x0A:
                replies = [self.handle_cip(part) for part in codec.unpack_services(data)]
                failed = any(r[2] != 0 for r in replies)
                return codec.encode_cip_reply(service, 0x1E if failed else 0, codec.pack_services(replies))
            if service == 0x55:
                return self._symbol_list(entries)
            if service == 0x03 and entries[:1] == [("class", 0x6C)]:
                return self._template_attributes(entries, data)
            if service == 0x4C and entries[:1] == [("class", 0x6C)]:
                return self._read_template(entries, data)
            if service in (0x4C, 0x52):
                return self._read_tag(service, entries, data)
            if service in (0x4D, 0x53):
                return self._write_tag(service, entries, data)
        except CIPFault as e:
            return codec.encode_cip_reply(service, e.status, extended_status=e.extended)
        return codec.encode_cip_reply(service, 0x08)

    def _symbol_list(self, entries: list) -> bytes:
        scope = entries[0][1] if entries[0][0] == "symbol" else None
        start = entries[-1][1]
        symbols = sorted((s for s in self._scope(scope) if s.instance_id >= start), key=lambda s: s.instance_id)
        page = symbols[: self.page_size]
        data = b"".join(
            struct.pack("<IH", s.instance_id, len(s.name)) + s.name.encode() + struct.pack("<HIII", s.type_word, *s.dims)
            for s in page
        )
        return codec.encode_cip_reply(0x55, 0x06 if len(symbols) > len(page) else 0, data)

    def _template_attributes(self, entries: list, data: bytes) -> bytes:
        template = self.templates.get(entries[1][1])
        if template is None:
            raise CIPFault(0x05)
        count = struct.unpack_from("<H", data)[0]
        attributes = struct.unpack_from(f"<{count}H", data, 2)
        values = {
            1: struct.pack("<H", template.handle),
            2: struct.pack("<H", len(template.members)),
            4: struct.pack("<I", template.definition_size),
            5: struct.pack("<I", template.size),
        }
        out = struct.pack("<H", count) + b"".join(struct.pack("<HH", a, 0) + values[a] for a in attributes)
        return codec.encode_cip_reply(0x03, 0, out)

    def _read_template(self, entries: list, data: bytes) -> bytes:
        template = self.templates.get(entries[1][1])
        if template is None:
            raise CIPFault(0x05)
        offset, count = struct.unpack_from("<IH", data)
        raw = template.definition()
        end = min(offset + count, len(raw))
        chunk = raw[offset : min(end, offset + self.template_page)]
        return codec.encode_cip_reply(0x4C, 0x06 if offset + len(chunk) < end else 0, chunk)

    def _read_tag(self, service: int, entries: list, data: bytes) -> bytes:
        sym, type_word, offset, available = self._locate(entries)
        count = struct.unpack_from("<H", data)[0]
        start = struct.unpack_from("<I", data, 2)[0] if service == 0x52 else 0
        if count > available:
            raise CIPFault(0x05)
        size = self.element_size(type_word) * count
        with self._lock:
            value = bytes(sym.data[offset : offset + size])
        chunk = value[start : start + self.fragment_size]
        more = start + len(chunk) < len(value)
        return codec.encode_cip_reply(service, 0x06 if more else 0, self.type_field(type_word) + chunk)

    def _write_tag(self, service: int, entries: list, data: bytes) -> bytes:
        sym, type_word, offset, available = self._locate(entries)
        expected = self.type_field(type_word)
        if not data.startswith(expected):
            raise CIPFault(0xFF, (0x2107,))
        pos = len(expected)
        count = struct.unpack_from("<H", data, pos)[0]
        pos += 2
        start = 0
        if service == 0x53:
            start = struct.unpack_from("<I", data, pos)[0]
            pos += 4
        chunk = data[pos:]
        if count > available or start + len(chunk) > self.element_size(type_word) * count:
            raise CIPFault(0x15)
        with self._lock:
            sym.data[offset + start : offset + start + len(chunk)] = chunk
        return codec.encode_cip_reply(service, 0)


class FakeTransport:
    def __init__(self, plc: FakeLogix) -> None:
        self.plc = plc
        self.buffer = bytearray()
        self.opened = False
        self.closed = False

    def open(self) -> None:
        if self.plc.refuse_connect:
            raise TransportError("Connection refused")
        self.opened = True
        self.plc.transports.append(self)

    def send(self, data: bytes) -> None:
        if self.closed or not self.opened:
            raise TransportError("Connection is not open")
        if self.plc.fail_sends:
            self.plc.fail_sends -= 1
            raise TransportError("Connection reset by peer")
        gate = self.plc.gate
        if gate is not None:
            self.plc.in_flight.set()
            gate.wait(5)
        while self.plc.stale_frames:
            self.buffer += self.plc.stale_frames.pop(0)
        reply = self.plc.handle_frame(data)
        if reply is not None and not self.plc.drop_responses:
            self.buffer += reply

    def recv_exact(self, size: int, timeout: float) -> bytes:
        if len(self.buffer) < size:
            raise ResponseTimeoutError(f"No response within {timeout:.1f}s")
        out = bytes(self.buffer[:size])
        del self.buffer[:size]
        return out

    def close(self) -> None:
        self.closed = True


def build_plc() -> FakeLogix:
    plc = FakeLogix()
    plc.add_template(FakeTemplate(0xFCE, "ASCIISTRING82", 0x0FCE, 88, [("LEN", 0, 0xC4, 0), ("DATA", 82, 0xC2, 4)]))
    plc.add_template(FakeTemplate(0x100, "UDT1", 0x1111, 92, [("DINT1", 0, 0xC4, 0), ("STRING1", 0, STRING_TYPE, 4)]))
    plc.add_template(FakeTemplate(0x101, "UDT2", 0x2222, 464, [("ID", 0, 0xC4, 0), ("UDT1", 5, UDT1_TYPE, 4)]))

    plc.add_symbol("Counter", 0xC4)
    plc.add_symbol("Temperature", 0xCA)
    plc.add_symbol("Running", 0xC1)
    plc.add_symbol("Recipe", ARRAY_1D | 0xC4, (10, 0, 0))
    plc.add_symbol("Big", ARRAY_1D | 0xC4, (200, 0, 0))
    plc.add_symbol("Name", STRING_TYPE)
    plc.add_symbol("Matrix", 0x4000 | 0xC3, (2, 3, 0))
    plc.add_symbol("TestUDT2", UDT2_TYPE | ARRAY_1D, (2, 0, 0), scope="Program:MainProgram")

    plc.poke("Counter", struct.pack("<i", 42))
    plc.poke("Temperature", struct.pack("<f", 21.5))
    plc.poke("Running", b"\x01")
    for i in range(10):
        plc.poke(f"Recipe[{i}]", struct.pack("<i", i * 10))
    for i in range(200):
        plc.poke(f"Big[{i}]", struct.pack("<i", i))
    plc.poke("Name", string_bytes("Line 1"))
    plc.poke("Program:MainProgram.TestUDT2[0].ID", struct.pack("<i", 7))
    for i in range(5):
        plc.poke(f"Program:MainProgram.TestUDT2[0].UDT1[{i}].DINT1", struct.pack("<i", i))
    plc.poke("Program:MainProgram.TestUDT2[0].UDT1[0].STRING1", string_bytes("Hello"))
    return plc


@pytest.fixture
def plc() -> FakeLogix:
    return build_plc()


@pytest.fixture
def config() -> ControllerConfig:
    return ControllerConfig(
        timeout=0.5,
        poll_interval=0.02,
        failure_threshold=2,
        reconnect=ReconnectPolicy(initial_delay=0.01, max_delay=0.05),
    )


@pytest.fixture
def client(plc: FakeLogix, config: ControllerConfig):
    c = CIPClient("10.0.0.1", config, transport_factory=plc.transport_factory)
    c.connect()
    yield c
    c.close()
