"""Error taxonomy for renderer control and playlist sync."""


class CastError(Exception):
    """Base class for every error raised by ktvcast."""


class ConfigurationError(CastError):
    """Static misconfiguration. Never retried."""


class ServiceNotSupported(ConfigurationError):
    def __init__(self, device_name: str, service_type: str):
        self.device_name = device_name
        self.service_type = service_type
        super().__init__(f"Device '{device_name}' does not support {service_type}")


class InvalidLocation(ConfigurationError):
    def __init__(self, location: str, reason: str = "missing scheme or host"):
        self.location = location
        super().__init__(f"Invalid device location '{location}': {reason}")


class TransportError(CastError):
    """Network failure, non-2xx status, SOAP fault or malformed response."""


class SoapFault(TransportError):
    """The renderer answered with a SOAP fault."""

    def __init__(self, action: str, detail: str):
        self.action = action
        self.detail = detail
        super().__init__(f"{action}: SOAP fault: {detail}")


class ProtocolExhausted(TransportError):
    """The standard path and every fallback control path failed."""

    def __init__(self, action: str, attempts: int = 0, last_error: str = ""):
        self.action = action
        self.attempts = attempts
        self.last_error = last_error
        message = f"All {action} attempts failed ({attempts} control paths tried)"
        if last_error:
            message += f", last error: {last_error}"
        super().__init__(message)


class TimeParseError(CastError, ValueError):
    def __init__(self, value: str):
        self.value = value
        super().__init__(f"Unparseable time string: {value!r}")


class RemoteSourceError(CastError):
    """Playlist pull or advance rejected by the room server."""


class LinkResolutionError(CastError):
    """A playlist item could not be turned into a playable URL."""
