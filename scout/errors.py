from __future__ import annotations


class ScoutError(Exception):
    """Base class for every error raised by the patrol engine."""


class ConfigurationError(ScoutError):
    """A target definition is malformed and was rejected at creation."""


class NetworkError(ScoutError):
    """The probe request failed at the transport level."""


class ProbeAssertionError(ScoutError):
    """An assertion script condition did not hold for the captured response."""


class ScriptError(ScoutError):
    """An assertion script could not be compiled or raised while running."""


class PersistenceError(ScoutError):
    """The target store could not read or write a target."""


class AlertSendError(ScoutError):
    """The alert destination could not be reached or rejected the payload."""
