"""Exceptions raised by pypepro for conditions the caller can check in advance."""


class PEProError(Exception):
    """Base class for all pypepro errors."""


class DeviceNotReadyError(PEProError, RuntimeError):
    """A command was enqueued before any device host was configured."""


class NotOnLocalNetworkError(PEProError, RuntimeError):
    """A scan was requested without a usable local network address."""


class ConnectionFailedError(PEProError):
    """The device did not answer the presence/serial handshake."""


class PresetError(PEProError):
    """A preset could not be stored or changed."""


class PresetNotFoundError(PresetError, KeyError):
    """No preset has the requested id."""


class ReadOnlyPresetError(PresetError):
    """Factory presets can never be deleted."""
