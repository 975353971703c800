from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from scout.models import Snapshot


APDEX_LOOKBACK = timedelta(hours=24)
TOLERATING_FACTOR = 4


def compute_apdex(
    snapshots: Sequence["Snapshot"],
    apdex_target: float,
    *,
    now: datetime | None = None,
) -> float | None:
    """
    Apdex over the last 24 hours of snapshots (newest last).

    Samples at or below the target are satisfied, up to 4x the target are
    tolerating, anything slower is frustrated. Snapshots without a response time
    (Idle, transport errors) are not samples. Returns None when the window holds
    no samples.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    horizon = now - APDEX_LOOKBACK
    target = float(apdex_target)

    total = 0
    satisfied = 0
    tolerating = 0
    for snap in reversed(snapshots):
        if snap.timestamp <= horizon:
            break
        if snap.response_time is None:
            continue
        total += 1
        ratio = float(snap.response_time) / target
        if ratio <= 1:
            satisfied += 1
        elif ratio <= TOLERATING_FACTOR:
            tolerating += 1

    if total <= 0:
        return None
    return (satisfied + tolerating / 2.0) / float(total)
