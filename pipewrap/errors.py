# pipewrap/errors.py
# Exception types shared by the capture pipeline.
# Configuration and backend errors are fatal at startup; everything raised later is handled where it happens.


class PipewrapError(Exception):
    """Base error for pipewrap."""


class ConfigError(PipewrapError):
    """Raised when configuration loading or validation fails."""


class BackendUnavailable(ConfigError):
    """Raised when the selected capture backend cannot be used on this host."""


class BackendError(PipewrapError):
    """Raised when a capture backend fails to open."""


class DeviceNotFound(BackendError):
    """Raised when the capture interface does not exist."""


class FilterRejected(BackendError):
    """Raised when the capture filter expression does not compile."""


class DeviceOpenFailed(BackendError):
    """Raised when the interface exists but cannot be opened (permissions, driver)."""


class ProcessStartFailed(BackendError):
    """Raised when the child process cannot be resolved or started."""


class ChannelClosed(PipewrapError):
    """Raised when a record is put into a channel that has already been closed."""
