"""Scout: scheduled HTTP probes with assertion scripts, Apdex and escalation alerts."""

from .errors import (
    AlertSendError,
    ConfigurationError,
    NetworkError,
    PersistenceError,
    ProbeAssertionError,
    ScoutError,
    ScriptError,
)
from .models import Snapshot, SnapshotStatus, Target, WorkTimeWindow, parse_target

__all__ = [
    "AlertSendError",
    "ConfigurationError",
    "NetworkError",
    "PersistenceError",
    "ProbeAssertionError",
    "ScoutError",
    "ScriptError",
    "Snapshot",
    "SnapshotStatus",
    "Target",
    "WorkTimeWindow",
    "parse_target",
]
