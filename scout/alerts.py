from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

import httpx
import structlog

from scout.errors import AlertSendError
from scout.models import Snapshot, SnapshotStatus, Target
from scout.settings import ScoutSettings, get_settings


logger = structlog.get_logger(__name__)


def count_trailing_errors(snapshots: Sequence[Snapshot]) -> int:
    """Consecutive Error snapshots at the end of the history; Idle entries do not break the streak."""
    errors = 0
    for snap in reversed(snapshots):
        if snap.status is SnapshotStatus.ERROR:
            errors += 1
        elif snap.status is SnapshotStatus.OK:
            break
    return errors


def effective_tolerance(tolerance: int) -> int:
    # A tolerance of 0 alerts on the first failure.
    return max(int(tolerance), 1)


@dataclass(frozen=True)
class AlertIntent:
    target_id: str
    name: str
    recipients: tuple[str, ...]
    err_message: str
    detail: str = ""
    error_streak: int = 0

    def payload(self) -> dict[str, Any]:
        return {
            "recipients": list(self.recipients),
            "name": self.name,
            "errMessage": self.err_message,
            "detail": self.detail,
        }


def build_alert_intent(target: Target, err_message: str) -> AlertIntent | None:
    """
    Decide whether the target's history has just crossed its tolerance.

    Expects the triggering Error snapshot to be appended already. Fires only when
    the streak equals the tolerance exactly, so one escalation sends one alert.
    """
    if not target.recipients:
        return None
    streak = count_trailing_errors(target.snapshots)
    if streak != effective_tolerance(target.tolerance):
        return None
    return AlertIntent(
        target_id=target.id,
        name=target.name,
        recipients=tuple(target.recipients),
        err_message=err_message,
        error_streak=streak,
    )


@dataclass
class AlertDispatcher:
    client: httpx.AsyncClient
    settings_provider: Callable[[], ScoutSettings] = field(default=get_settings)

    async def send(self, intent: AlertIntent) -> bool:
        settings = self.settings_provider()
        if not settings.alerts_enabled:
            logger.info("Alert destination not configured; skipping alert", target_id=intent.target_id)
            return False

        try:
            await self._post(settings, intent)
        except AlertSendError as exc:
            logger.warning("Alert send failed", target_id=intent.target_id, name=intent.name, error=str(exc))
            return False
        return True

    async def _post(self, settings: ScoutSettings, intent: AlertIntent) -> str:
        try:
            resp = await self.client.post(
                settings.alert_url,
                json=intent.payload(),
                timeout=settings.alert_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise AlertSendError(f"{type(exc).__name__}: {exc}") from exc

        text = resp.text or ""
        if resp.status_code >= 400:
            raise AlertSendError(f"alert destination returned {resp.status_code}: {text[:500]}")
        logger.info(
            "Alert sent",
            target_id=intent.target_id,
            name=intent.name,
            recipients=len(intent.recipients),
            error_streak=intent.error_streak,
            response=text[:500],
        )
        return text

    async def alert(self, target: Target, err_message: str) -> bool:
        intent = build_alert_intent(target, err_message)
        if intent is None:
            return False
        return await self.send(intent)
