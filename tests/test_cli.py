"""Test argument parsing and exit status mapping."""

import argparse
import asyncio

import pytest

from gattcat import cli
from gattcat.adapter import AdapterInfo
from gattcat.config import DEFAULT_UUID, Address
from gattcat.exceptions import AdapterLost, ConnectFailure


def test_connect_defaults() -> None:
    args = cli.build_parser().parse_args(["connect", "aa:bb:cc:dd:ee:ff"])

    assert args.subcommand == "connect"
    assert args.address == Address("AA:BB:CC:DD:EE:FF")
    assert args.service == DEFAULT_UUID
    assert args.characteristic == DEFAULT_UUID
    assert args.timeout == 15.0
    assert args.bind is None
    assert not args.raw


def test_serve_passes_program_arguments_through() -> None:
    args = cli.build_parser().parse_args(
        ["serve", "-o", "-p", "-b", "00:1A:7D:DA:71:01", "/bin/sh", "-c", "echo hi"]
    )

    assert args.program == "/bin/sh"
    assert args.args == ["-c", "echo hi"]
    assert args.one_shot
    assert args.pty
    assert args.bind == Address("00:1A:7D:DA:71:01")
    assert not args.no_advertise


def test_discover_accepts_an_address_filter() -> None:
    args = cli.build_parser().parse_args(["discover", "-P", "-N", "-t", "3", "AA:BB:CC:DD:EE:01", "AA:BB:CC:DD:EE:02"])

    assert args.address == [Address("AA:BB:CC:DD:EE:01"), Address("AA:BB:CC:DD:EE:02")]
    assert args.public_only
    assert args.no_connect
    assert args.timeout == 3.0


def test_invalid_address_is_a_usage_error() -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.build_parser().parse_args(["connect", "not-an-address"])

    assert excinfo.value.code == 2


def test_invalid_uuid_is_a_usage_error() -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.build_parser().parse_args(["listen", "-s", "1234"])

    assert excinfo.value.code == 2


def test_no_subcommand_prints_help(capsys) -> None:
    assert cli.main([]) == 0
    assert "usage: gattcat" in capsys.readouterr().out


def test_errors_map_to_exit_codes(monkeypatch, capsys) -> None:
    async def lost(args: argparse.Namespace) -> int:
        raise AdapterLost("Adapter was disconnected or bluetoothd crashed")

    async def unreachable(args: argparse.Namespace) -> int:
        raise ConnectFailure("device, service or characteristic not found")

    monkeypatch.setitem(cli.COMMANDS, "listen", lost)
    monkeypatch.setitem(cli.COMMANDS, "connect", unreachable)

    assert cli.main(["listen"]) == 3
    assert "Error: Adapter was disconnected or bluetoothd crashed" in capsys.readouterr().err

    assert cli.main(["connect", "AA:BB:CC:DD:EE:FF"]) == 2
    assert "Error: device, service or characteristic not found" in capsys.readouterr().err


def test_successful_command_returns_its_status(monkeypatch) -> None:
    async def ok(args: argparse.Namespace) -> int:
        return 0

    monkeypatch.setitem(cli.COMMANDS, "discover", ok)

    assert cli.main(["discover"]) == 0


class _FakeWatcher:
    """Reports the adapter lost shortly after it starts watching."""

    def __init__(self, adapter_path: str, on_lost, log: list[str]) -> None:
        self._on_lost = on_lost
        self._log = log

    async def start(self) -> None:
        asyncio.get_running_loop().call_later(0.05, self._on_lost)

    async def stop(self) -> None:
        self._log.append("watcher stopped")


def test_adapter_loss_cancels_the_running_session(monkeypatch, capsys) -> None:
    log: list[str] = []

    async def fake_resolve(bind):
        return AdapterInfo("hci0", "/org/bluez/hci0", Address("00:1A:7D:DA:71:01"), True)

    async def fake_serve(config, publisher) -> None:
        log.append("serving")
        try:
            await asyncio.Event().wait()
        finally:
            log.append("session ended")

    monkeypatch.setattr(cli, "resolve_adapter", fake_resolve)
    monkeypatch.setattr(cli, "AdapterWatcher", lambda path, on_lost: _FakeWatcher(path, on_lost, log))
    monkeypatch.setattr(cli, "serve", fake_serve)

    assert cli.main(["serve", "/bin/cat"]) == 3
    assert log == ["serving", "session ended", "watcher stopped"]
    assert "Error: Adapter was disconnected or bluetoothd crashed" in capsys.readouterr().err
