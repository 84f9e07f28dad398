"""Test the device and service description output."""

from __future__ import annotations

import io

import pytest

from gattcat.config import Address, AddressType
from gattcat.endpoint import QueueReader
from gattcat.exceptions import ConnectFailure
from gattcat.inventory import describe_device, format_flags, hex_lines, print_list, print_value


class _FakeDescriptor:
    def uuid(self) -> str:
        return "00002902-0000-1000-8000-00805f9b34fb"

    async def read(self) -> bytes:
        return b"\x01\x00"


class _FakeCharacteristic:
    def __init__(self, uuid: str, flags: list[str], value: bytes = b"", notification: bytes | None = None) -> None:
        self._uuid = uuid
        self._flags = flags
        self._value = value
        self._notification = notification

    def uuid(self) -> str:
        return self._uuid

    def flags(self) -> list[str]:
        return self._flags

    async def read(self) -> bytes:
        return self._value

    async def notify(self) -> QueueReader:
        reader = QueueReader(mtu=20)
        if self._notification is not None:
            reader.feed(self._notification)
        return reader

    def descriptors(self) -> list[_FakeDescriptor]:
        return [_FakeDescriptor()] if "notify" in self._flags else []


class _FakeService:
    def __init__(self, uuid: str, characteristics: list[_FakeCharacteristic]) -> None:
        self._uuid = uuid
        self._characteristics = characteristics

    def uuid(self) -> str:
        return self._uuid

    def primary(self) -> bool:
        return True

    def includes(self) -> list[str]:
        return []

    def characteristics(self) -> list[_FakeCharacteristic]:
        return self._characteristics


class _FakeDevice:
    def __init__(self, fail_connect: bool = False) -> None:
        self.address = Address("AA:BB:CC:DD:EE:FF", AddressType.RANDOM)
        self.connect_calls = 0
        self._fail = fail_connect

    def address_type(self) -> AddressType:
        return AddressType.RANDOM

    def name(self) -> str:
        return "Thermometer"

    def rssi(self) -> int:
        return -48

    def tx_power(self) -> None:
        return None

    def service_data(self) -> dict[str, bytes]:
        return {}

    def manufacturer_data(self) -> dict[int, bytes]:
        return {0x004C: b"\x02\x15"}

    def is_connected(self) -> bool:
        return False

    async def connect(self) -> None:
        self.connect_calls += 1
        if self._fail:
            raise ConnectFailure("Connect to AA:BB:CC:DD:EE:FF failed: refused")

    def services(self) -> list[_FakeService]:
        return [
            _FakeService(
                "0000180f-0000-1000-8000-00805f9b34fb",
                [
                    _FakeCharacteristic("00002a19-0000-1000-8000-00805f9b34fb", ["read", "notify"], b"\x64", b"\x63"),
                    _FakeCharacteristic("00002a00-0000-1000-8000-00805f9b34fb", ["write-without-response"]),
                ],
            )
        ]


def test_hex_lines_pads_and_masks_non_printable() -> None:
    lines = hex_lines(b"Hello, BLE\x00\x7f!")

    assert lines == [
        "48 65 6c 6c 6f 2c 20 42 4c 45   Hello, BLE",
        "00 7f 21                        ..!",
    ]


def test_format_flags_uses_spaces() -> None:
    assert format_flags(["read", "write-without-response", "notify"]) == "read, write without response, notify"


def test_print_helpers_align_labels() -> None:
    out = io.StringIO()

    print_value(2, "RSSI", -60, "dBm", out=out)
    print_value(2, "Name", None, out=out)
    print_list(4, "Includes", ["a", "b"], out=out)

    assert out.getvalue() == "  RSSI      -60 dBm\n    Includes  a\n              b\n"


@pytest.mark.asyncio
async def test_describe_without_connecting() -> None:
    device = _FakeDevice()
    out = io.StringIO()

    await describe_device(device, no_connect=True, out=out)

    assert device.connect_calls == 0
    assert out.getvalue().splitlines() == [
        "Device AA:BB:CC:DD:EE:FF [random]",
        "  Name      Thermometer",
        "  RSSI      -48 dBm",
        "  Manufacturer data 0x004c",
        "            02 15                           ..",
    ]


@pytest.mark.asyncio
async def test_describe_lists_services_and_characteristics() -> None:
    out = io.StringIO()

    await describe_device(_FakeDevice(), out=out)

    text = out.getvalue()
    assert "  Primary service 0000180f-0000-1000-8000-00805f9b34fb" in text
    assert "    Characteristic 00002a19-0000-1000-8000-00805f9b34fb" in text
    assert "      Flags     read, notify" in text
    assert "      Read      64" in text
    assert "      Notify    63" in text
    assert "      Descriptor 00002902-0000-1000-8000-00805f9b34fb" in text
    assert "        Read      01 00" in text
    assert "      Flags     write without response" in text


@pytest.mark.asyncio
async def test_describe_reports_connect_failure() -> None:
    device = _FakeDevice(fail_connect=True)
    out = io.StringIO()

    await describe_device(device, retries=0, out=out)

    assert device.connect_calls == 1
    assert "  Connect failed: Connect to AA:BB:CC:DD:EE:FF failed: refused" in out.getvalue()
