"""Error taxonomy for gattcat.

Every error that can terminate a command derives from GattcatError and
carries the process exit status the CLI reports for it.
"""

EXIT_SUCCESS = 0
EXIT_FAILURE = 2
EXIT_ADAPTER_LOST = 3


class GattcatError(Exception):
    """Base class for all gattcat errors."""

    exit_code = EXIT_FAILURE


class ConfigError(GattcatError, ValueError):
    """Raised when a UUID, address or other option is invalid."""

    pass


class AdapterNotFound(GattcatError):
    """Raised when no (or not the requested) Bluetooth adapter is present."""

    pass


class DiscoveryTimeout(GattcatError):
    """Raised when the target device never showed up before the deadline."""

    pass


class ConnectFailure(GattcatError):
    """Raised when every connect attempt to a device failed."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class CharacteristicNotFound(GattcatError):
    """Raised when the device lacks the requested service or characteristic."""

    pass


class CapabilityUnsupported(GattcatError):
    """Raised when a characteristic supports neither notify nor write."""

    pass


class LocalIoFailure(GattcatError):
    """Local stream (terminal, pipe, PTY) read or write failed."""

    pass


class RemoteIoFailure(GattcatError):
    """Characteristic read, notify or write failed."""

    pass


class ChildSpawnFailure(GattcatError):
    """Raised when the command to serve cannot be executed."""

    pass


class AdapterLost(GattcatError):
    """Raised when the adapter disappears or bluetoothd goes away."""

    exit_code = EXIT_ADAPTER_LOST
