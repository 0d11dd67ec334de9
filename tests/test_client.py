"""Tests for CIPClient tag services against the fake controller."""

import struct

import pytest

from pycip_tags.address import resolve
from pycip_tags.client import CIPClient, ReadReply, decode_reply, parse_read_data, plan_batches
from pycip_tags.datatypes import DINT, INT, ArrayType
from pycip_tags.errors import (
    AddressError,
    CIPServiceError,
    MalformedFrameError,
    TypeMismatchError,
    UnknownTagError,
    UnsupportedTypeError,
)
from pycip_tags.templates import ResolvedType

from conftest import string_bytes


def test_read_atomic(client) -> None:
    assert client.read("Counter") == 42
    assert client.read("counter") == 42
    assert client.read("Temperature") == 21.5
    assert client.read("Running") is True


def test_read_string(client) -> None:
    assert client.read("Name") == "Line 1"


def test_read_array_element_and_slice(client) -> None:
    assert client.read("Recipe[3]") == 30
    assert client.read("Recipe") == [i * 10 for i in range(10)]
    assert client.read("Recipe", array_size=3) == [0, 10, 20]


def test_read_fragmented(client, plc) -> None:
    client.resolve("Big")
    before = len(plc.services)
    assert client.read("Big") == list(range(200))
    # routed requests are wrapped in 0x52 too, so continuations show up as extra 0x52s
    sent = plc.services[before:]
    assert sent.count(0x52) > sent.count(0x4C)


def test_read_multi_dimensional(client, plc) -> None:
    plc.poke("Matrix[1,2]", struct.pack("<h", -7))
    assert client.read("Matrix[1,2]") == -7
    assert client.read("Matrix") == [0, 0, 0, 0, 0, -7]


def test_read_structure(client) -> None:
    value = client.read("TestUDT2[0]", program="MainProgram")
    assert value["ID"] == 7
    assert [u["DINT1"] for u in value["UDT1"]] == [0, 1, 2, 3, 4]
    assert value["UDT1"][0]["STRING1"] == "Hello"


def test_read_unknown_and_malformed(client) -> None:
    with pytest.raises(UnknownTagError):
        client.read("Missing")
    with pytest.raises(AddressError):
        client.read("Counter[")


def test_write_then_read_string(client, plc) -> None:
    client.write("Name", "Hi there")
    assert plc.peek("Name", 12) == string_bytes("Hi there")[:12]
    assert client.read("Name") == "Hi there"


def test_write_atomic(client) -> None:
    client.write("Counter", -5)
    client.write("Running", False)
    assert client.read("Counter") == -5
    assert client.read("Running") is False


def test_write_fragmented(client, plc) -> None:
    client.write("Big", [i * 2 for i in range(200)])
    assert 0x53 in plc.services
    assert client.read("Big") == [i * 2 for i in range(200)]


def test_write_validates_before_sending(client, plc) -> None:
    client.read("Counter")
    before = list(plc.services)
    with pytest.raises(TypeMismatchError):
        client.write("Counter", "abc")
    with pytest.raises(TypeMismatchError):
        client.write("Recipe", [1, 2, 3])
    assert plc.services == before


def test_read_many_batches_into_one_request(client, plc) -> None:
    paths = ["Counter", "Temperature", "Running", "Name", "Recipe"]
    for p in paths:
        client.resolve(p)
    values = client.read_many(paths)
    assert values == {
        "Counter": 42,
        "Temperature": 21.5,
        "Running": True,
        "Name": "Line 1",
        "Recipe": [i * 10 for i in range(10)],
    }
    assert plc.services.count(0x0A) == 1


def test_read_many_reads_large_tags_alone(client, plc) -> None:
    values = client.read_many(["Counter", "Big"])
    assert values["Counter"] == 42
    assert values["Big"] == list(range(200))


def test_read_many_raises_on_failing_tag(client, plc) -> None:
    plc.read_errors["counter"] = 0x05
    with pytest.raises(CIPServiceError) as exc:
        client.read_many(["Counter", "Temperature"])
    assert exc.value.status == 0x05
    assert exc.value.tag == "Counter"


def test_read_service_error_carries_tag(client, plc) -> None:
    plc.read_errors["temperature"] = 0x08
    with pytest.raises(CIPServiceError, match="Temperature") as exc:
        client.read("Temperature")
    assert exc.value.status == 0x08


def test_explain_needs_no_connection() -> None:
    info = CIPClient("localhost").explain("TestUDT2[0].UDT1[0].STRING1", program="MainProgram")
    assert info["path"] == "TestUDT2[0].UDT1[0].STRING1"
    assert info["program"] == "MainProgram"
    assert info["base"] == "TestUDT2"
    assert info["segments"] == ["[0]", ".UDT1", "[0]", ".STRING1"]
    assert info["request_path"].startswith("91 13")


def test_parse_read_data() -> None:
    assert parse_read_data(b"\xC4\x00\x2A\x00\x00\x00") == ReadReply(0xC4, None, b"\x2A\x00\x00\x00")
    assert parse_read_data(b"\xA0\x02\xCE\x0F\x01") == ReadReply(0x02A0, 0x0FCE, b"\x01")
    with pytest.raises(MalformedFrameError):
        parse_read_data(b"\xC4")
    with pytest.raises(MalformedFrameError):
        parse_read_data(b"\xA0\x02\xCE")


def test_decode_reply_checks_type() -> None:
    resolved = ResolvedType(DINT, (), 1)
    assert decode_reply(resolved, ReadReply(0xC4, None, b"\x01\x00\x00\x00")) == 1
    with pytest.raises(TypeMismatchError):
        decode_reply(resolved, ReadReply(0xC3, None, b"\x01\x00"), "Counter")
    with pytest.raises(UnsupportedTypeError):
        decode_reply(resolved, ReadReply(0xA0, None, b""), "Counter")


def test_plan_batches() -> None:
    small = [(f"T{i}", resolve(f"Tag{i}"), ResolvedType(DINT, (), 1)) for i in range(40)]
    big = ("Big", resolve("Big"), ResolvedType(DINT, (200,), 200))
    batches, singles = plan_batches(small + [big], 200)
    assert singles == [big]
    assert len(batches) > 1
    assert [item for batch in batches for item in batch] == small


def test_plan_batches_keeps_order_in_one_batch() -> None:
    items = [("a", resolve("A"), ResolvedType(INT, (), 1)), ("b", resolve("B"), ResolvedType(INT, (4,), 4))]
    batches, singles = plan_batches(items, 500)
    assert batches == [items]
    assert singles == []
    assert ArrayType(INT, 4) == items[1][2].value_type
