"""gattcat: netcat for Bluetooth LE GATT characteristics.

Relays a byte stream between a local process (the terminal, or a spawned
program) and a single GATT characteristic, either as a GATT client that
connects to a remote characteristic or as a GATT server that publishes
one and waits for a peer.

Example:
    $ gattcat serve --one-shot /bin/cat      # on the server
    $ gattcat connect AA:BB:CC:DD:EE:FF     # on the client
"""

__version__ = "0.1.0"

from .config import (
    Address,
    AddressType,
    ConnectConfig,
    DiscoverConfig,
    ListenConfig,
    ServeConfig,
    parse_uuid,
    DEFAULT_UUID,
)
from .exceptions import (
    GattcatError,
    ConfigError,
    AdapterNotFound,
    AdapterLost,
    CapabilityUnsupported,
    CharacteristicNotFound,
    ChildSpawnFailure,
    ConnectFailure,
    DiscoveryTimeout,
    LocalIoFailure,
    RemoteIoFailure,
)
from .endpoint import CharacteristicEndpoint, QueueReader, negotiate
from .control import ControlChannel, NotifySubscribe, WriteRequest
from .relay import io_loop, io_loop_serve
from .client import ConnectionMatcher, connect_with_retries
from .discovery import DiscoverySweep
from .serve import listen, serve

__all__ = [
    # Version
    "__version__",
    # Configuration
    "Address",
    "AddressType",
    "ConnectConfig",
    "DiscoverConfig",
    "ListenConfig",
    "ServeConfig",
    "parse_uuid",
    "DEFAULT_UUID",
    # Errors
    "GattcatError",
    "ConfigError",
    "AdapterNotFound",
    "AdapterLost",
    "CapabilityUnsupported",
    "CharacteristicNotFound",
    "ChildSpawnFailure",
    "ConnectFailure",
    "DiscoveryTimeout",
    "LocalIoFailure",
    "RemoteIoFailure",
    # Relay
    "CharacteristicEndpoint",
    "QueueReader",
    "negotiate",
    "ControlChannel",
    "NotifySubscribe",
    "WriteRequest",
    "io_loop",
    "io_loop_serve",
    # Commands
    "ConnectionMatcher",
    "connect_with_retries",
    "DiscoverySweep",
    "listen",
    "serve",
]
