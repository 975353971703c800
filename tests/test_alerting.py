from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from scout.alerts import AlertDispatcher, build_alert_intent, count_trailing_errors, effective_tolerance
from scout.models import Snapshot, SnapshotStatus, parse_target
from scout.settings import ScoutSettings


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _history(*statuses: str) -> list[Snapshot]:
    return [Snapshot(timestamp=T0 + timedelta(minutes=i), status=s) for i, s in enumerate(statuses)]


def _target(*statuses: str, **overrides):
    data = {
        "name": "api",
        "url": "https://example.com/health",
        "recipients": ["ops@example.com"],
        "tolerance": 2,
        "snapshots": _history(*statuses),
    }
    data.update(overrides)
    return parse_target(data)


def test_count_trailing_errors_skips_idle_and_stops_at_ok() -> None:
    assert count_trailing_errors([]) == 0
    assert count_trailing_errors(_history("OK", "Error", "Error")) == 2
    assert count_trailing_errors(_history("Error", "OK")) == 0
    assert count_trailing_errors(_history("OK", "Error", "Idle", "Error", "Idle")) == 2
    assert count_trailing_errors(_history("Error", "Error", "Error")) == 3


def test_effective_tolerance() -> None:
    assert effective_tolerance(0) == 1
    assert effective_tolerance(1) == 1
    assert effective_tolerance(3) == 3


def test_intent_fires_exactly_at_tolerance() -> None:
    assert build_alert_intent(_target("OK", "Error"), "boom") is None

    intent = build_alert_intent(_target("OK", "Error", "Error"), "boom")
    assert intent is not None
    assert intent.error_streak == 2
    assert intent.payload() == {
        "recipients": ["ops@example.com"],
        "name": "api",
        "errMessage": "boom",
        "detail": "",
    }

    # Further failures in the same streak stay quiet.
    assert build_alert_intent(_target("OK", "Error", "Error", "Error"), "boom") is None


def test_zero_tolerance_alerts_on_first_failure() -> None:
    assert build_alert_intent(_target("OK", "Error", tolerance=0), "down") is not None


def test_no_recipients_never_alerts() -> None:
    assert build_alert_intent(_target("OK", "Error", "Error", recipients=[]), "boom") is None


@pytest.mark.asyncio
async def test_dispatcher_posts_payload(probe_server: str, received_alerts: list[dict]) -> None:
    settings = ScoutSettings(alert_url=f"{probe_server}/alerts")
    intent = build_alert_intent(_target("Error", "Error"), "HTTP 500")
    assert intent is not None

    async with httpx.AsyncClient() as client:
        sent = await AlertDispatcher(client, settings_provider=lambda: settings).send(intent)

    assert sent is True
    assert received_alerts == [
        {"recipients": ["ops@example.com"], "name": "api", "errMessage": "HTTP 500", "detail": ""}
    ]


@pytest.mark.asyncio
async def test_dispatcher_failure_is_reported_not_raised(probe_server: str, received_alerts: list[dict]) -> None:
    settings = ScoutSettings(alert_url=f"{probe_server}/alerts-broken")
    intent = build_alert_intent(_target("Error", "Error"), "HTTP 500")
    assert intent is not None

    async with httpx.AsyncClient() as client:
        sent = await AlertDispatcher(client, settings_provider=lambda: settings).send(intent)

    assert sent is False
    assert received_alerts == []


@pytest.mark.asyncio
async def test_dispatcher_unreachable_destination() -> None:
    settings = ScoutSettings(alert_url="http://127.0.0.1:9/alerts", alert_timeout_seconds=2)
    intent = build_alert_intent(_target("Error", "Error"), "HTTP 500")
    assert intent is not None

    async with httpx.AsyncClient() as client:
        assert await AlertDispatcher(client, settings_provider=lambda: settings).send(intent) is False


@pytest.mark.asyncio
async def test_dispatcher_disabled_without_destination(received_alerts: list[dict]) -> None:
    settings = ScoutSettings(alert_url="")
    async with httpx.AsyncClient() as client:
        dispatcher = AlertDispatcher(client, settings_provider=lambda: settings)
        assert await dispatcher.alert(_target("Error", "Error"), "boom") is False
    assert received_alerts == []


@pytest.mark.asyncio
async def test_alert_shortcut_skips_when_not_at_threshold(probe_server: str, received_alerts: list[dict]) -> None:
    settings = ScoutSettings(alert_url=f"{probe_server}/alerts")
    async with httpx.AsyncClient() as client:
        dispatcher = AlertDispatcher(client, settings_provider=lambda: settings)
        assert await dispatcher.alert(_target("OK", "Error"), "boom") is False
        assert await dispatcher.alert(_target("OK", "Error", "Error"), "boom") is True
    assert len(received_alerts) == 1
