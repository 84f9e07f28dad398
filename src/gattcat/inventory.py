"""Human readable description of a device and its GATT services."""

import asyncio
import logging
import sys
from typing import Iterable, TextIO

from .client import connect_with_retries
from .config import DEFAULT_CONNECT_RETRIES, ENUMERATE_CONNECT_TIMEOUT, NOTIFY_SAMPLE_TIMEOUT
from .exceptions import ConnectFailure, GattcatError

logger = logging.getLogger(__name__)

LABEL_WIDTH = 10
HEX_WIDTH = 10  # bytes per hex dump line


def hex_lines(data: bytes, width: int = HEX_WIDTH) -> list[str]:
    """Hex dump of data with an ASCII column, width bytes per line."""
    lines = []
    for offset in range(0, len(data), width):
        chunk = data[offset:offset + width]
        hex_part = " ".join(f"{b:02x}" for b in chunk)
        text = "".join(chr(b) if 0x20 <= b < 0x7F else "." for b in chunk)
        lines.append(f"{hex_part:<{width * 3 - 1}}   {text}")
    return lines


def print_value(indent: int, label: str, value, unit: str = "", out: TextIO = sys.stdout) -> None:
    if value is None:
        return
    print(f"{' ' * indent}{label:<{LABEL_WIDTH}}{value} {unit}".rstrip(), file=out)


def print_list(indent: int, label: str, values: Iterable, out: TextIO = sys.stdout) -> None:
    """Print values one per line, the label only on the first one."""
    for value in values:
        print(f"{' ' * indent}{label:<{LABEL_WIDTH}}{value}".rstrip(), file=out)
        label = ""


def format_flags(flags: Iterable[str]) -> str:
    return ", ".join(flag.replace("-", " ") for flag in flags)


def print_device_info(device, out: TextIO = sys.stdout) -> None:
    print_value(2, "Name", device.name(), out=out)
    print_value(2, "RSSI", device.rssi(), "dBm", out=out)
    print_value(2, "TX power", device.tx_power(), "dBm", out=out)
    for uuid, data in device.service_data().items():
        print_list(2, f"Service data {uuid}", [""] + hex_lines(data), out=out)
    for company, data in device.manufacturer_data().items():
        print_list(2, f"Manufacturer data 0x{company:04x}", [""] + hex_lines(data), out=out)


async def _sample_notification(characteristic) -> bytes | None:
    """First notification of characteristic, if one arrives in time."""
    try:
        reader = await characteristic.notify()
    except GattcatError as e:
        logger.debug(f"Notify on {characteristic.uuid()} failed: {e}")
        return None

    try:
        return await asyncio.wait_for(reader.read(reader.mtu), NOTIFY_SAMPLE_TIMEOUT)
    except asyncio.TimeoutError:
        return None
    finally:
        reader.close()


async def print_characteristic(characteristic, out: TextIO = sys.stdout) -> None:
    print(f"    Characteristic {characteristic.uuid()}", file=out)
    flags = characteristic.flags()
    print_value(6, "Flags", format_flags(flags), out=out)

    if "read" in flags:
        try:
            print_list(6, "Read", hex_lines(await characteristic.read()), out=out)
        except GattcatError as e:
            logger.debug(str(e))

    if "notify" in flags or "indicate" in flags:
        value = await _sample_notification(characteristic)
        if value:
            print_list(6, "Notify", hex_lines(value), out=out)

    for descriptor in characteristic.descriptors():
        print(f"      Descriptor {descriptor.uuid()}", file=out)
        try:
            print_list(8, "Read", hex_lines(await descriptor.read()), out=out)
        except GattcatError as e:
            logger.debug(str(e))


async def enumerate_services(device, retries: int = DEFAULT_CONNECT_RETRIES, out: TextIO = sys.stdout) -> None:
    """Connect to device and print its services and characteristics."""
    try:
        await asyncio.wait_for(connect_with_retries(device, retries), ENUMERATE_CONNECT_TIMEOUT)
    except ConnectFailure as e:
        print(f"  Connect failed: {e}", file=out)
        return
    except asyncio.TimeoutError:
        print("  Connect timed out", file=out)
        return

    for service in device.services():
        kind = "Primary" if service.primary() else "Secondary"
        print(f"  {kind} service {service.uuid()}", file=out)
        print_list(4, "Includes", service.includes(), out=out)
        for characteristic in service.characteristics():
            await print_characteristic(characteristic, out=out)


async def describe_device(
    device,
    no_connect: bool = False,
    retries: int = DEFAULT_CONNECT_RETRIES,
    out: TextIO = sys.stdout,
) -> None:
    print(f"Device {device.address} [{device.address_type()}]", file=out)
    print_device_info(device, out=out)
    if not no_connect:
        await enumerate_services(device, retries, out=out)
