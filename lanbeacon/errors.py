"""
Error types shared by the discovery scheduler, the client and the codec.
"""


class LanBeaconError(Exception):
    pass


class ConfigError(LanBeaconError, ValueError):
    pass


class ResolutionError(LanBeaconError):
    """No usable local address could be determined."""


class NoInterfaceError(ResolutionError):
    pass


class BindError(LanBeaconError):
    """A UDP socket could not be created or bound. Fatal at startup."""

    def __init__(self, address, cause=None):
        self.address = address
        self.cause = cause
        super().__init__(f"Could not bind UDP socket on {address[0]}:{address[1]}: {cause}")


class SendError(LanBeaconError):
    """A datagram could not be sent. The scheduler treats this as transient."""


class DecodeError(LanBeaconError):
    pass


class MalformedMessageError(DecodeError):
    pass


class MissingFieldError(DecodeError):
    def __init__(self, field: str):
        self.field = field
        super().__init__(f"Missing required field: {field}")


class DiscoveryError(LanBeaconError):
    pass


class DiscoveryTimeout(DiscoveryError):
    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"No valid announcement received within {timeout}s")
