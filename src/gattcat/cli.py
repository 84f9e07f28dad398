"""Command line interface: gattcat discover | connect | listen | serve."""

import argparse
import asyncio
import logging
import sys

from .adapter import AdapterWatcher, BleakAdapter, resolve_adapter
from .client import connect
from .config import (
    ADAPTER_LOST_GRACE,
    DEFAULT_DISCOVERY_TIMEOUT,
    DEFAULT_UUID,
    Address,
    ConnectConfig,
    DiscoverConfig,
    ListenConfig,
    ServeConfig,
    parse_uuid,
)
from .discovery import DiscoverySweep
from .exceptions import EXIT_FAILURE, EXIT_SUCCESS, AdapterLost, GattcatError
from .serve import listen, serve
from .server import CharacteristicPublisher

logger = logging.getLogger(__name__)

LIBRARY_LOGGERS = ("bleak", "bless", "dbus_next")


def setup_logging(debug: bool = False) -> None:
    """Configure logging to standard error, standard output carries data."""
    level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )
    # Keep the BLE libraries one level quieter than ours
    for name in LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(level + 10)


async def cmd_discover(args: argparse.Namespace) -> int:
    """Describe nearby devices and their GATT services."""
    config = DiscoverConfig(
        addresses=args.address,
        bind=args.bind,
        timeout=args.timeout,
        public_only=args.public_only,
        no_connect=args.no_connect,
    )
    info = await resolve_adapter(config.bind)
    await DiscoverySweep(BleakAdapter(info), config).run()
    return EXIT_SUCCESS


async def cmd_connect(args: argparse.Namespace) -> int:
    """Connect to a remote characteristic and relay standard input and output."""
    config = ConnectConfig(
        address=args.address,
        service=args.service,
        characteristic=args.characteristic,
        bind=args.bind,
        timeout=args.timeout,
        raw=args.raw,
    )
    info = await resolve_adapter(config.bind)
    await connect(config, BleakAdapter(info))
    return EXIT_SUCCESS


async def cmd_listen(args: argparse.Namespace) -> int:
    """Publish a characteristic and relay standard input and output."""
    config = ListenConfig(
        service=args.service,
        characteristic=args.characteristic,
        bind=args.bind,
        advertise=not args.no_advertise,
        raw=args.raw,
        verbose=args.verbose,
    )
    info = await resolve_adapter(config.bind)
    if config.verbose:
        print(f"Serving on {info.address}", file=sys.stderr)

    await listen(config, CharacteristicPublisher(advertise=config.advertise, adapter_path=info.path))
    return EXIT_SUCCESS


async def cmd_serve(args: argparse.Namespace) -> int:
    """Publish a characteristic and run a command for every peer."""
    config = ServeConfig(
        command=args.program,
        args=args.args,
        service=args.service,
        characteristic=args.characteristic,
        bind=args.bind,
        advertise=not args.no_advertise,
        one_shot=args.one_shot,
        pty=args.pty,
        verbose=args.verbose,
    )
    info = await resolve_adapter(config.bind)
    if config.verbose:
        print(f"Serving on {info.address}", file=sys.stderr)

    lost = asyncio.get_running_loop().create_future()

    def on_lost() -> None:
        if not lost.done():
            lost.set_result(None)

    watcher = AdapterWatcher(info.path, on_lost)
    await watcher.start()
    publisher = CharacteristicPublisher(advertise=config.advertise, adapter_path=info.path)
    serving = asyncio.ensure_future(serve(config, publisher))
    try:
        done, _ = await asyncio.wait({serving, lost}, return_when=asyncio.FIRST_COMPLETED)
        if serving not in done:
            serving.cancel()
            # Teardown may talk to a dead bluetoothd, do not wait on it for long
            await asyncio.wait({serving}, timeout=ADAPTER_LOST_GRACE)
            raise AdapterLost("Adapter was disconnected or bluetoothd crashed")
        serving.result()
    finally:
        await watcher.stop()

    return EXIT_SUCCESS


COMMANDS = {
    "discover": cmd_discover,
    "connect": cmd_connect,
    "listen": cmd_listen,
    "serve": cmd_serve,
}


def _add_bind(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-b", "--bind",
        type=Address.parse,
        metavar="ADDRESS",
        help="Address of local Bluetooth adapter to use",
    )


def _add_uuids(parser: argparse.ArgumentParser, role: str) -> None:
    parser.add_argument(
        "-s", "--service",
        type=parse_uuid,
        default=DEFAULT_UUID,
        help=f"GATT service to {role} (default: {DEFAULT_UUID})",
    )
    parser.add_argument(
        "-c", "--characteristic",
        type=parse_uuid,
        default=DEFAULT_UUID,
        help=f"GATT characteristic to {role} (default: {DEFAULT_UUID})",
    )


def _add_timeout(parser: argparse.ArgumentParser, what: str) -> None:
    parser.add_argument(
        "-t", "--timeout",
        type=float,
        default=DEFAULT_DISCOVERY_TIMEOUT,
        help=f"Timeout in seconds for {what} (default: {DEFAULT_DISCOVERY_TIMEOUT:g})",
    )


def _add_server_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Print listen and peer information to standard error",
    )
    parser.add_argument(
        "-n", "--no-advertise",
        action="store_true",
        help="Do not send LE advertisement packets",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gattcat",
        description="Swiss army knife for Bluetooth LE GATT: relay bytes through a characteristic",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="subcommand", help="Commands")

    # Discover command
    discover_parser = subparsers.add_parser("discover", help="Discover devices and their services")
    _add_bind(discover_parser)
    _add_timeout(discover_parser, "discovering a device")
    discover_parser.add_argument(
        "-P", "--public-only",
        action="store_true",
        help="Only show devices with public addresses",
    )
    discover_parser.add_argument(
        "-N", "--no-connect",
        action="store_true",
        help="Do not connect to discovered devices for GATT service discovery",
    )
    discover_parser.add_argument(
        "address",
        nargs="*",
        type=Address.parse,
        help="Addresses of Bluetooth devices; scans for all devices if unspecified",
    )

    # Connect command
    connect_parser = subparsers.add_parser("connect", help="Connect to a remote characteristic")
    _add_bind(connect_parser)
    _add_timeout(connect_parser, "discovering the device")
    connect_parser.add_argument(
        "-r", "--raw",
        action="store_true",
        help="Switch the terminal into raw mode",
    )
    _add_uuids(connect_parser, "connect to")
    connect_parser.add_argument(
        "address",
        type=Address.parse,
        help="Address of the remote device",
    )

    # Listen command
    listen_parser = subparsers.add_parser("listen", help="Publish a characteristic and relay stdio")
    _add_bind(listen_parser)
    _add_server_options(listen_parser)
    listen_parser.add_argument(
        "-r", "--raw",
        action="store_true",
        help="Switch the terminal into raw mode",
    )
    _add_uuids(listen_parser, "publish")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Publish a characteristic and serve a program")
    _add_bind(serve_parser)
    _add_server_options(serve_parser)
    serve_parser.add_argument(
        "-o", "--one-shot",
        action="store_true",
        help="Exit after handling one connection",
    )
    serve_parser.add_argument(
        "-p", "--pty",
        action="store_true",
        help="Allocate a pseudo-terminal for the program; use together with --raw when connecting",
    )
    _add_uuids(serve_parser, "publish")
    serve_parser.add_argument(
        "program",
        help="Program to execute once a connection is established",
    )
    serve_parser.add_argument(
        "args",
        nargs=argparse.REMAINDER,
        help="Arguments to the program",
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug)

    command = COMMANDS.get(args.subcommand)
    if command is None:
        parser.print_help()
        return EXIT_SUCCESS

    try:
        return asyncio.run(command(args))
    except GattcatError as e:
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code
    except KeyboardInterrupt:
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
