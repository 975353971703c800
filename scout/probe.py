from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Any, Iterable, Sequence

import httpx
import structlog

from scout.errors import NetworkError, ProbeAssertionError, ScriptError
from scout.models import Snapshot, SnapshotStatus, Target
from scout.sandbox import run_script
from scout.work_time import is_work_time


logger = structlog.get_logger(__name__)

MAX_CAPTURED_BODY_CHARS = 10_000


@dataclass(frozen=True)
class ProbeOutcome:
    status: SnapshotStatus
    status_code: int | None = None
    response_time: float | None = None
    err_message: str | None = None
    body: str | None = None

    @classmethod
    def idle(cls) -> "ProbeOutcome":
        return cls(status=SnapshotStatus.IDLE)

    @classmethod
    def ok(cls, status_code: int, response_time: float) -> "ProbeOutcome":
        return cls(status=SnapshotStatus.OK, status_code=status_code, response_time=response_time)

    @classmethod
    def error(
        cls,
        message: str,
        *,
        status_code: int | None = None,
        response_time: float | None = None,
        body: str | None = None,
    ) -> "ProbeOutcome":
        return cls(
            status=SnapshotStatus.ERROR,
            status_code=status_code,
            response_time=response_time,
            err_message=message,
            body=body,
        )

    @property
    def is_error(self) -> bool:
        return self.status is SnapshotStatus.ERROR

    def to_snapshot(self, timestamp: datetime | None = None) -> Snapshot:
        data: dict[str, Any] = {
            "status": self.status,
            "status_code": self.status_code,
            "response_time": self.response_time,
            "err_message": self.err_message,
            "body": self.body,
        }
        if timestamp is not None:
            data["timestamp"] = timestamp
        return Snapshot(**data)


def headers_from_pairs(pairs: Iterable[Sequence[str]]) -> httpx.Headers:
    """Build request headers from stored [name, value] pairs, keeping repeated names."""
    items: list[tuple[str, str]] = []
    for pair in pairs or []:
        if len(pair) < 2:
            continue
        name = str(pair[0] or "").strip()
        if not name:
            continue
        items.append((name, str(pair[1] if pair[1] is not None else "")))
    return httpx.Headers(items)


def _clip(text: str | None) -> str | None:
    if text is None:
        return None
    return text if len(text) <= MAX_CAPTURED_BODY_CHARS else text[:MAX_CAPTURED_BODY_CHARS]


class ProbeExecutor:
    """Runs one probe for a target: request, read, assert."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        timeout_seconds: float = 15.0,
        tz: tzinfo | None = None,
    ):
        self.client = client
        self.timeout_seconds = float(timeout_seconds)
        self.tz = tz

    async def probe(self, target: Target, *, now: datetime | None = None) -> ProbeOutcome:
        try:
            return await self._probe(target, now=now)
        except Exception as exc:
            logger.exception("Probe crashed", target_id=target.id, name=target.name)
            return ProbeOutcome.error(f"{type(exc).__name__}: {exc}")

    async def _send(self, target: Target) -> httpx.Response:
        request = self.client.build_request(
            target.method,
            target.url,
            headers=headers_from_pairs(target.headers),
            content=target.body.encode("utf-8") if target.body is not None else None,
            timeout=self.timeout_seconds,
        )
        try:
            return await self.client.send(request, stream=True)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise NetworkError(f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__) from exc

    async def _probe(self, target: Target, *, now: datetime | None = None) -> ProbeOutcome:
        if not is_work_time(target.work_time, now, tz=self.tz):
            return ProbeOutcome.idle()

        started = time.perf_counter()
        try:
            resp = await self._send(target)
        except NetworkError as exc:
            return ProbeOutcome.error(str(exc))

        # Latency covers request start to response headers; the body read is not included.
        response_time = round((time.perf_counter() - started) * 1000.0, 3)
        status_code = resp.status_code

        try:
            await resp.aread()
        except httpx.HTTPError as exc:
            return ProbeOutcome.error(
                f"read_error: {type(exc).__name__}: {exc}",
                status_code=status_code,
                response_time=response_time,
            )
        finally:
            await resp.aclose()

        text = resp.text
        body: Any = text
        if target.read_type == "json":
            try:
                body = json.loads(text)
            except ValueError as exc:
                return ProbeOutcome.error(
                    f"invalid_json: {exc}",
                    status_code=status_code,
                    response_time=response_time,
                    body=_clip(text),
                )

        try:
            # Off the event loop so a slow script cannot stall other patrols.
            await asyncio.to_thread(
                run_script,
                target.test_case,
                status_code=status_code,
                response_time=response_time,
                body=body,
            )
        except (ProbeAssertionError, ScriptError) as exc:
            return ProbeOutcome.error(
                str(exc),
                status_code=status_code,
                response_time=response_time,
                body=_clip(text),
            )

        return ProbeOutcome.ok(status_code, response_time)
