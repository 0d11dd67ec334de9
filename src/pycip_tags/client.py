"""CIPClient: symbolic Logix tag services over a Session, plus batching helpers."""

import logging
import struct
from dataclasses import dataclass
from typing import Any, Sequence, TypeVar

from . import address, codec
from .address import RequestFragment
from .config import ControllerConfig
from .datatypes import ATOMIC_TYPES, DataType, StructType, decode, encode, reply_signature
from .errors import CIPServiceError, MalformedFrameError, TypeMismatchError, UnsupportedTypeError
from .session import Session
from .templates import ResolvedType, TagDirectory
from .transport import TransportFactory
from .types import CIPReply, ClassCode, ExplainInfo, Service

logger = logging.getLogger(__name__)

T = TypeVar("T")

# service + path size + count, and the per-service offset table entry
_READ_REQUEST_OVERHEAD = 2 + 2 + 2
# reply header + type code, and the per-service offset table entry
_READ_REPLY_OVERHEAD = 4 + 2 + 2
# Multiple Service request/reply framing around the embedded services
_MULTI_REQUEST_OVERHEAD = 2 + len(codec.MESSAGE_ROUTER_PATH) + 2
_MULTI_REPLY_OVERHEAD = 4 + 2
# Unconnected Send framing when routing through the backplane
_ROUTING_OVERHEAD = 16


@dataclass(frozen=True)
class ReadReply:
    """Type code, structure handle (structures only) and raw value bytes of a read."""

    type_code: int
    handle: int | None
    data: bytes


def parse_read_data(data: bytes) -> ReadReply:
    if len(data) < 2:
        raise MalformedFrameError("Read reply lacks a type code")
    type_code = struct.unpack_from("<H", data)[0]
    if type_code == codec.STRUCT_TYPE_CODE:
        if len(data) < 4:
            raise MalformedFrameError("Structure read reply lacks a handle")
        return ReadReply(type_code, struct.unpack_from("<H", data, 2)[0], bytes(data[4:]))
    return ReadReply(type_code, None, bytes(data[2:]))


def decode_reply(resolved: ResolvedType, reply: ReadReply, tag: str | None = None) -> Any:
    """Check the reply's type against the resolved type, then decode the value."""
    if reply.type_code != codec.STRUCT_TYPE_CODE and reply.type_code not in ATOMIC_TYPES:
        raise UnsupportedTypeError(reply.type_code, tag=tag)
    if (reply.type_code, reply.handle) != resolved.signature:
        raise TypeMismatchError(
            f"{tag or 'tag'}: controller returned type 0x{reply.type_code:04X}"
            f"{'' if reply.handle is None else f'/0x{reply.handle:04X}'}, expected {resolved.name}",
            tag=tag,
        )
    return decode(resolved.value_type, reply.data)


def type_field(data_type: DataType) -> bytes:
    type_code, handle = reply_signature(data_type)
    if handle is None:
        return struct.pack("<H", type_code)
    return struct.pack("<HH", type_code, handle)


def read_request_size(fragment: RequestFragment) -> int:
    return _READ_REQUEST_OVERHEAD + len(fragment.epath)


def read_reply_size(resolved: ResolvedType) -> int:
    extra = 2 if isinstance(resolved.element, StructType) else 0
    return _READ_REPLY_OVERHEAD + extra + resolved.value_type.size


def plan_batches(
    items: Sequence[tuple[T, RequestFragment, ResolvedType]],
    max_payload: int,
    routed: bool = True,
) -> tuple[list[list[tuple[T, RequestFragment, ResolvedType]]], list[tuple[T, RequestFragment, ResolvedType]]]:
    """
    Group reads into Multiple Service batches whose request and reply both fit
    in max_payload. Returns (batches, singles); singles are too large for any
    batch and must be read on their own (fragmented).
    """
    request_limit = max_payload - (_ROUTING_OVERHEAD if routed else 0)
    batches: list[list[tuple[T, RequestFragment, ResolvedType]]] = []
    singles: list[tuple[T, RequestFragment, ResolvedType]] = []
    current: list[tuple[T, RequestFragment, ResolvedType]] = []
    req_size = _MULTI_REQUEST_OVERHEAD
    rep_size = _MULTI_REPLY_OVERHEAD
    for item in items:
        _key, fragment, resolved = item
        item_req = read_request_size(fragment)
        item_rep = read_reply_size(resolved)
        if _MULTI_REQUEST_OVERHEAD + item_req > request_limit or _MULTI_REPLY_OVERHEAD + item_rep > max_payload:
            singles.append(item)
            continue
        if current and (req_size + item_req > request_limit or rep_size + item_rep > max_payload):
            batches.append(current)
            current = []
            req_size = _MULTI_REQUEST_OVERHEAD
            rep_size = _MULTI_REPLY_OVERHEAD
        current.append(item)
        req_size += item_req
        rep_size += item_rep
    if current:
        batches.append(current)
    return batches, singles


class CIPClient:
    """
    Symbolic tag access to one Logix controller.

    Low-level services (read_tag, read_tags, write_tag, attribute and template
    services) are used by the polling engine; read/write/read_many/explain are
    the one-shot API, usable as a context manager.
    """

    def __init__(
        self,
        host: str,
        config: ControllerConfig | None = None,
        *,
        transport_factory: TransportFactory | None = None,
        session: Session | None = None,
    ) -> None:
        self._host = host
        self._config = config or ControllerConfig()
        self._session = session or Session(
            host,
            self._config.port,
            self._config.timeout,
            slot=self._config.slot,
            reconnect_policy=self._config.reconnect,
            transport_factory=transport_factory,
        )
        self._directory = TagDirectory(self)

    @property
    def host(self) -> str:
        return self._host

    @property
    def config(self) -> ControllerConfig:
        return self._config

    @property
    def session(self) -> Session:
        return self._session

    @property
    def directory(self) -> TagDirectory:
        return self._directory

    def connect(self) -> None:
        """Register a session with the controller."""
        self._session.open()

    def close(self) -> None:
        """Unregister and close the connection."""
        self._session.close()

    def __enter__(self) -> "CIPClient":
        self.connect()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    def _request(self, message: bytes, *, tag: str | None = None, accept: tuple[int, ...] = (codec.SUCCESS,)) -> CIPReply:
        reply = self._session.request(message)
        if reply.status not in accept:
            raise CIPServiceError(
                f"{codec.status_message(reply.status)} (service 0x{reply.service:02X}"
                f"{f', tag {tag}' if tag else ''})",
                status=reply.status,
                extended_status=reply.extended_status,
                service=reply.service,
                tag=tag,
            )
        return reply

    def read_tag(self, fragment: RequestFragment, count: int = 1) -> ReadReply:
        """Read Tag, continuing with Read Tag Fragmented on partial transfer."""
        tag = fragment.full_path
        message = codec.encode_cip_request(Service.READ_TAG, fragment.epath, struct.pack("<H", count))
        reply = self._request(message, tag=tag, accept=(codec.SUCCESS, codec.PARTIAL_TRANSFER))
        first = parse_read_data(reply.data)
        if reply.status == codec.SUCCESS:
            return first
        data = bytearray(first.data)
        while True:
            message = codec.encode_cip_request(
                Service.READ_TAG_FRAGMENTED, fragment.epath, struct.pack("<HI", count, len(data))
            )
            reply = self._request(message, tag=tag, accept=(codec.SUCCESS, codec.PARTIAL_TRANSFER))
            part = parse_read_data(reply.data)
            if (part.type_code, part.handle) != (first.type_code, first.handle):
                raise MalformedFrameError(f"{tag}: type changed between fragments")
            data += part.data
            if reply.status == codec.SUCCESS:
                break
            if not part.data:
                raise MalformedFrameError(f"{tag}: fragmented read made no progress")
        logger.debug("Fragmented read of %s returned %d bytes", tag, len(data))
        return ReadReply(first.type_code, first.handle, bytes(data))

    def read_tags(self, requests: Sequence[tuple[RequestFragment, int]]) -> list[ReadReply | CIPServiceError]:
        """
        Read several tags in one Multiple Service Packet. Each entry of the
        result is either the tag's ReadReply or the CIPServiceError it got.
        """
        if not requests:
            return []
        messages = [
            codec.encode_cip_request(Service.READ_TAG, fragment.epath, struct.pack("<H", count))
            for fragment, count in requests
        ]
        reply = self._request(
            codec.encode_multiple_service(messages),
            accept=(codec.SUCCESS, codec.EMBEDDED_SERVICE_ERROR),
        )
        replies = codec.decode_multiple_service(reply.data)
        if len(replies) != len(requests):
            raise MalformedFrameError(f"Expected {len(requests)} replies, got {len(replies)}")
        out: list[ReadReply | CIPServiceError] = []
        for (fragment, _count), item in zip(requests, replies):
            if item.status == codec.SUCCESS:
                out.append(parse_read_data(item.data))
            else:
                out.append(
                    CIPServiceError(
                        f"{codec.status_message(item.status)} reading {fragment.full_path}",
                        status=item.status,
                        extended_status=item.extended_status,
                        service=item.service,
                        tag=fragment.full_path,
                    )
                )
        return out

    def write_tag(self, fragment: RequestFragment, resolved: ResolvedType, raw: bytes) -> None:
        """Write Tag, or Write Tag Fragmented when the value does not fit one request."""
        tag = fragment.full_path
        count = resolved.count
        header = type_field(resolved.element)
        base = 2 + len(fragment.epath) + len(header) + 2
        limit = self._config.max_payload - (_ROUTING_OVERHEAD if self._config.slot is not None else 0)
        if base + len(raw) <= limit:
            message = codec.encode_cip_request(Service.WRITE_TAG, fragment.epath, header + struct.pack("<H", count) + raw)
            self._request(message, tag=tag)
            return
        chunk = (limit - base - 4) & ~0x3
        offset = 0
        while offset < len(raw):
            part = raw[offset : offset + chunk]
            message = codec.encode_cip_request(
                Service.WRITE_TAG_FRAGMENTED,
                fragment.epath,
                header + struct.pack("<HI", count, offset) + part,
            )
            self._request(message, tag=tag)
            offset += len(part)
        logger.debug("Fragmented write of %s sent %d bytes", tag, len(raw))

    def get_instance_attribute_list(self, scope: str | None, start: int, attributes: Sequence[int]) -> CIPReply:
        path = codec.symbolic_segment(scope) if scope else b""
        path += codec.class_segment(ClassCode.SYMBOL) + codec.instance_segment(start)
        data = struct.pack(f"<H{len(attributes)}H", len(attributes), *attributes)
        message = codec.encode_cip_request(Service.GET_INSTANCE_ATTRIBUTE_LIST, path, data)
        return self._request(message, accept=(codec.SUCCESS, codec.PARTIAL_TRANSFER))

    def get_attribute_list(self, class_code: int, instance: int, attributes: Sequence[int]) -> CIPReply:
        path = codec.class_segment(class_code) + codec.instance_segment(instance)
        data = struct.pack(f"<H{len(attributes)}H", len(attributes), *attributes)
        return self._request(codec.encode_cip_request(Service.GET_ATTRIBUTE_LIST, path, data))

    def read_template(self, instance_id: int, definition_size: int) -> bytes:
        """Read a template definition, paging while the reply reports partial transfer."""
        path = codec.class_segment(ClassCode.TEMPLATE) + codec.instance_segment(instance_id)
        total = definition_size * 4 - 21
        data = bytearray()
        while len(data) < total:
            message = codec.encode_cip_request(
                Service.READ_TAG, path, struct.pack("<IH", len(data), total - len(data))
            )
            reply = self._request(message, accept=(codec.SUCCESS, codec.PARTIAL_TRANSFER))
            data += reply.data
            if reply.status == codec.SUCCESS:
                break
            if not reply.data:
                raise MalformedFrameError(f"Template {instance_id} read made no progress")
        return bytes(data)

    # ------------------------------------------------------------------
    # One-shot API
    # ------------------------------------------------------------------

    def resolve(
        self,
        path: str,
        program: str | None = None,
        array_dims: int | None = None,
        array_size: int | None = None,
    ) -> tuple[RequestFragment, ResolvedType]:
        address.validate_hints(path, array_dims, array_size)
        fragment = address.resolve(path, program)
        return fragment, self._directory.resolve(fragment, array_dims, array_size)

    def read(self, path: str, program: str | None = None, array_size: int | None = None) -> Any:
        """Read one tag; arrays come back as lists, structures as dicts."""
        fragment, resolved = self.resolve(path, program, array_size=array_size)
        reply = self.read_tag(fragment, resolved.count)
        return decode_reply(resolved, reply, fragment.full_path)

    def write(self, path: str, value: Any, program: str | None = None, array_size: int | None = None) -> None:
        """Write one tag after validating the value against its type."""
        fragment, resolved = self.resolve(path, program, array_size=array_size)
        raw = encode(resolved.value_type, value)
        self.write_tag(fragment, resolved, raw)

    def read_many(self, paths: list[str], program: str | None = None) -> dict[str, Any]:
        """
        Read several tags, packing them into as few Multiple Service requests as
        the payload limit allows. Any failing tag raises.
        """
        items = []
        for p in paths:
            fragment, resolved = self.resolve(p, program)
            items.append((p, fragment, resolved))
        batches, singles = plan_batches(items, self._config.max_payload, self._config.slot is not None)

        out: dict[str, Any] = {}
        for batch in batches:
            results = self.read_tags([(fragment, resolved.count) for _p, fragment, resolved in batch])
            for (p, fragment, resolved), result in zip(batch, results):
                if isinstance(result, CIPServiceError):
                    raise result
                out[p] = decode_reply(resolved, result, fragment.full_path)
        for p, fragment, resolved in singles:
            out[p] = decode_reply(resolved, self.read_tag(fragment, resolved.count), fragment.full_path)
        return out

    def explain(self, path: str, program: str | None = None) -> dict[str, Any]:
        """Return the parsed path and encoded request path (no connection needed)."""
        fragment = address.resolve(path, program)
        info = ExplainInfo(
            path=fragment.path,
            program=fragment.program,
            base=fragment.base,
            segments=tuple(str(s) for s in fragment.segments),
            request_path=fragment.epath.hex(" "),
        )
        return {
            "path": info.path,
            "program": info.program,
            "base": info.base,
            "segments": list(info.segments),
            "request_path": info.request_path,
        }
