"""Defaults, identifier parsing and per-command configuration.

All tunables (UUIDs, timeouts, retry count, buffer sizes) are defined
here once and handed to the operations that use them as explicit
parameters.
"""

import re
from dataclasses import dataclass, field
from enum import Enum

from .exceptions import ConfigError

# Service and characteristic UUID shared by both sides when unspecified
DEFAULT_UUID = "02091984-ecf2-4b12-8135-59f4b1d1904b"

# Discovery / connect
DEFAULT_DISCOVERY_TIMEOUT = 15.0  # seconds
DEFAULT_CONNECT_RETRIES = 2  # 3 attempts in total
ENUMERATE_CONNECT_TIMEOUT = 20.0  # seconds, discover command only
NOTIFY_SAMPLE_TIMEOUT = 5.0  # seconds, discover command only

# Relay
FALLBACK_BUFFER_SIZE = 100  # bytes, used when no endpoint reports an MTU
ATT_HEADER_SIZE = 3
MIN_ATT_PAYLOAD = 20  # default ATT MTU (23) minus the ATT header

# Server
DEFAULT_SERVER_NAME = "gattcat"
DEFAULT_SERVER_MTU = MIN_ATT_PAYLOAD
ADAPTER_LOST_GRACE = 1.0  # seconds a session gets to unwind after adapter loss

UUID_PATTERN = re.compile(
    r"^[0-9A-Fa-f]{8}-?[0-9A-Fa-f]{4}-?[0-9A-Fa-f]{4}-?[0-9A-Fa-f]{4}-?[0-9A-Fa-f]{12}$"
)
ADDRESS_PATTERN = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")


class AddressType(Enum):
    """Link-layer address type of a Bluetooth device."""

    PUBLIC = "public"
    RANDOM = "random"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Address:
    """Bluetooth device address.

    Attributes:
        value: Address in AA:BB:CC:DD:EE:FF notation (upper case)
        kind: Address type; not part of equality
    """

    value: str
    kind: AddressType = field(default=AddressType.PUBLIC, compare=False)

    def __post_init__(self) -> None:
        if not ADDRESS_PATTERN.match(self.value):
            raise ConfigError(
                f"Invalid Bluetooth address: {self.value}. Expected format: AA:BB:CC:DD:EE:FF"
            )
        object.__setattr__(self, "value", self.value.upper())

    @classmethod
    def parse(cls, text: str, kind: AddressType = AddressType.PUBLIC) -> "Address":
        return cls(text.strip(), kind)

    def dbus_suffix(self) -> str:
        """Object path suffix BlueZ uses for this device (dev_AA_BB_...)."""
        return "dev_" + self.value.replace(":", "_")

    def __str__(self) -> str:
        return self.value


def parse_uuid(text: str) -> str:
    """Validate a 128-bit UUID and return it in lower-case hyphenated form.

    Args:
        text: UUID with or without hyphens

    Returns:
        Normalised UUID string

    Raises:
        ConfigError: If the UUID is malformed
    """
    if not UUID_PATTERN.match(text.strip()):
        raise ConfigError(
            f"Invalid UUID format: {text}. "
            "Expected format: XXXXXXXX-XXXX-XXXX-XXXX-XXXXXXXXXXXX"
        )
    hex_str = text.strip().replace("-", "").lower()
    return f"{hex_str[:8]}-{hex_str[8:12]}-{hex_str[12:16]}-{hex_str[16:20]}-{hex_str[20:]}"


def same_uuid(a: str, b: str) -> bool:
    """Compare two UUID strings regardless of case and hyphenation."""
    return a.replace("-", "").lower() == b.replace("-", "").lower()


def _check_timeout(timeout: float) -> None:
    if timeout <= 0:
        raise ConfigError(f"Timeout must be positive, got {timeout}")


@dataclass
class ConnectConfig:
    """Options of the connect command."""

    address: Address
    service: str = DEFAULT_UUID
    characteristic: str = DEFAULT_UUID
    bind: Address | None = None
    timeout: float = DEFAULT_DISCOVERY_TIMEOUT
    retries: int = DEFAULT_CONNECT_RETRIES
    raw: bool = False

    def __post_init__(self) -> None:
        self.service = parse_uuid(self.service)
        self.characteristic = parse_uuid(self.characteristic)
        _check_timeout(self.timeout)
        if self.retries < 0:
            raise ConfigError(f"Retries must be >= 0, got {self.retries}")


@dataclass
class ListenConfig:
    """Options of the listen command."""

    service: str = DEFAULT_UUID
    characteristic: str = DEFAULT_UUID
    bind: Address | None = None
    advertise: bool = True
    raw: bool = False
    verbose: bool = False

    def __post_init__(self) -> None:
        self.service = parse_uuid(self.service)
        self.characteristic = parse_uuid(self.characteristic)


@dataclass
class ServeConfig:
    """Options of the serve command."""

    command: str
    args: list[str] = field(default_factory=list)
    service: str = DEFAULT_UUID
    characteristic: str = DEFAULT_UUID
    bind: Address | None = None
    advertise: bool = True
    one_shot: bool = False
    pty: bool = False
    verbose: bool = False

    def __post_init__(self) -> None:
        self.service = parse_uuid(self.service)
        self.characteristic = parse_uuid(self.characteristic)
        if not self.command:
            raise ConfigError("A command to serve is required")


@dataclass
class DiscoverConfig:
    """Options of the discover command."""

    addresses: list[Address] = field(default_factory=list)
    bind: Address | None = None
    timeout: float = DEFAULT_DISCOVERY_TIMEOUT
    public_only: bool = False
    no_connect: bool = False
    retries: int = DEFAULT_CONNECT_RETRIES

    def __post_init__(self) -> None:
        _check_timeout(self.timeout)
