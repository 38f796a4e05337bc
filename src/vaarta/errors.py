# vaarta: Typed errors shared by the store, transport and orchestrator so the CLI can report them per command without crashing the session.


class VaartaError(Exception):
    """Base class for every error raised by vaarta itself."""


class TransportFailure(VaartaError, RuntimeError):
    """The model request failed: HTTP status, connection/read error, timeout or an error frame mid-stream."""


class ConfigurationError(VaartaError, RuntimeError):
    """A credential, model or endpoint is missing; raised before any turn is pushed."""


class InvalidRewindTarget(VaartaError, ValueError):
    """A rewind/edit target is out of range or names an unknown turn."""


class InvalidTransition(VaartaError, ValueError):
    """The requested operation is not valid in the orchestrator's current state."""
