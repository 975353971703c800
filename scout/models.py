from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, NamedTuple
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from scout.apdex import compute_apdex
from scout.errors import ConfigurationError, ScriptError
from scout.sandbox import compile_script


Weekday = Annotated[int, Field(ge=0, le=6)]
Hour = Annotated[int, Field(ge=0, le=23)]
Minute = Annotated[int, Field(ge=0, le=59)]

# (weekday, hour, minute); weekday 0 is Sunday.
TimeTriple = tuple[Weekday, Hour, Minute]


class WorkTimeWindow(NamedTuple):
    start: TimeTriple
    end: TimeTriple


class SnapshotStatus(str, Enum):
    OK = "OK"
    ERROR = "Error"
    IDLE = "Idle"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _floor_number(value: Any) -> Any:
    """
    Floor numeric input before range validation, so 99.9 becomes 99 and is then
    rejected by a minimum of 100.
    """
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return value
        return math.floor(value)
    return value


class Snapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=_utc_now)
    status: SnapshotStatus
    status_code: int | None = None
    response_time: float | None = None  # milliseconds
    err_message: str | None = None
    body: str | None = None

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Target(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = Field(..., min_length=1, max_length=200)
    tags: list[str] = Field(default_factory=list)

    method: Literal["GET", "HEAD", "POST"] = "GET"
    url: str = Field(..., min_length=1, max_length=2000)
    body: str | None = None
    headers: list[tuple[str, str]] = Field(default_factory=list)
    read_type: Literal["text", "json"] = "text"
    test_case: str = ""
    recipients: list[str] = Field(default_factory=list)

    apdex_target: int = Field(500, ge=100)
    interval: int = Field(5, ge=1)
    next_patrol: int = Field(0, ge=0)
    tolerance: int = Field(
        0,
        ge=0,
        description="Consecutive errors that trigger an alert; 0 and 1 both alert on the first error",
    )

    work_time: list[WorkTimeWindow] = Field(default_factory=list)
    snapshots: list[Snapshot] = Field(default_factory=list)

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("apdex_target", "interval", "next_patrol", "tolerance", mode="before")
    @classmethod
    def _floor_counts(cls, value: Any) -> Any:
        return _floor_number(value)

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        s = value.strip()
        parts = urlsplit(s)
        if (parts.scheme or "").lower() not in {"http", "https"}:
            raise ValueError("url must use http or https")
        if not parts.netloc:
            raise ValueError("url is missing a host")
        return s

    @field_validator("test_case")
    @classmethod
    def _compilable_script(cls, value: str) -> str:
        try:
            compile_script(value)
        except ScriptError as exc:
            raise ValueError(f"invalid test_case: {exc}") from exc
        return value

    @property
    def last_snapshot(self) -> Snapshot | None:
        return self.snapshots[-1] if self.snapshots else None

    def apdex(self, now: datetime | None = None) -> float | None:
        return compute_apdex(self.snapshots, self.apdex_target, now=now)


def parse_target(data: Any) -> Target:
    """Validate a raw mapping into a Target, raising ConfigurationError when malformed."""
    if isinstance(data, Target):
        return data
    if not isinstance(data, dict):
        raise ConfigurationError(f"target definition must be a mapping, got {type(data).__name__}")
    try:
        return Target.model_validate(data)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ())) or 'target'}: {err.get('msg')}" for err in exc.errors()
        )
        raise ConfigurationError(problems) from exc
