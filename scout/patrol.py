from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from scout.alerts import AlertDispatcher, AlertIntent, build_alert_intent
from scout.apdex import APDEX_LOOKBACK
from scout.errors import PersistenceError
from scout.models import Snapshot, Target
from scout.probe import ProbeExecutor, ProbeOutcome
from scout.store import TargetStore


logger = structlog.get_logger(__name__)

PATROL_JOB_ID = "patrol-all"
PRUNE_EVERY_SECONDS = 3600.0


@dataclass(frozen=True)
class PatrolResult:
    target: Target
    snapshot: Snapshot | None = None
    alert: AlertIntent | None = None

    @property
    def probed(self) -> bool:
        return self.snapshot is not None


def advance(target: Target) -> tuple[Target, bool]:
    """
    Count the target down by one tick. Returns the updated target and whether a
    probe is due this tick; when due the countdown restarts at interval - 1.
    """
    countdown = min(int(target.next_patrol), int(target.interval) - 1)
    if countdown > 0:
        return target.model_copy(update={"next_patrol": countdown - 1}), False
    return target.model_copy(update={"next_patrol": int(target.interval) - 1}), True


def record_outcome(target: Target, outcome: ProbeOutcome, *, now: datetime | None = None) -> PatrolResult:
    snapshot = outcome.to_snapshot(now)
    updated = target.model_copy(update={"snapshots": [*target.snapshots, snapshot]})
    alert = build_alert_intent(updated, outcome.err_message or "") if outcome.is_error else None
    return PatrolResult(target=updated, snapshot=snapshot, alert=alert)


class PatrolScheduler:
    """
    Drives every target through its patrol cycle on a shared tick.

    Each tick loads all targets and starts one task per target. Tasks run
    concurrently up to ``concurrency``; a target whose previous patrol is still
    running is skipped for that tick.
    """

    def __init__(
        self,
        store: TargetStore,
        executor: ProbeExecutor,
        dispatcher: AlertDispatcher,
        *,
        concurrency: int = 20,
        patrol_timeout_seconds: float = 45.0,
        snapshot_retention_days: int = 0,
    ):
        self.store = store
        self.executor = executor
        self.dispatcher = dispatcher
        self.patrol_timeout_seconds = float(patrol_timeout_seconds)
        self.snapshot_retention_days = int(snapshot_retention_days)
        self._semaphore = asyncio.Semaphore(max(1, int(concurrency)))
        self._in_flight: dict[str, asyncio.Task[PatrolResult | None]] = {}
        self._scheduler: AsyncIOScheduler | None = None
        self._last_prune_ts = 0.0

    async def _persist(self, target: Target, snapshot: Snapshot | None = None) -> bool:
        """Save the patrol result. Returns False only when the target has been deleted."""
        try:
            saved = await asyncio.to_thread(self.store.save, target, snapshot)
        except PersistenceError as exc:
            # The target still exists as far as we know; the alert decision stands.
            logger.error("Failed to persist target", target_id=target.id, name=target.name, error=str(exc))
            return True
        if not saved:
            logger.warning("Target disappeared during patrol", target_id=target.id, name=target.name)
        return saved

    async def _probe(self, target: Target, now: datetime | None) -> ProbeOutcome:
        try:
            return await asyncio.wait_for(self.executor.probe(target, now=now), timeout=self.patrol_timeout_seconds)
        except asyncio.TimeoutError:
            return ProbeOutcome.error(f"patrol_timeout: no result within {self.patrol_timeout_seconds:g}s")

    async def patrol(self, target: Target, *, now: datetime | None = None) -> PatrolResult:
        advanced, due = advance(target)
        if not due:
            await self._persist(advanced)
            return PatrolResult(target=advanced)

        outcome = await self._probe(advanced, now)
        result = record_outcome(advanced, outcome, now=now)
        logger.info(
            "Patrolled target",
            target_id=target.id,
            name=target.name,
            status=outcome.status.value,
            status_code=outcome.status_code,
            response_time=outcome.response_time,
            error=outcome.err_message,
        )
        exists = await self._persist(result.target, result.snapshot)

        if result.alert is not None:
            if exists:
                await self.dispatcher.send(result.alert)
            else:
                logger.info("Alert dropped for deleted target", target_id=target.id, name=target.name)
        return result

    async def _guarded_patrol(self, target: Target, now: datetime | None) -> PatrolResult | None:
        try:
            async with self._semaphore:
                return await self.patrol(target, now=now)
        except Exception:
            logger.exception("Patrol failed", target_id=target.id, name=target.name)
            return None
        finally:
            self._in_flight.pop(target.id, None)

    async def _maybe_prune(self) -> None:
        if self.snapshot_retention_days <= 0:
            return
        now_ts = time.time()
        if now_ts - self._last_prune_ts < PRUNE_EVERY_SECONDS:
            return
        self._last_prune_ts = now_ts
        cutoff = datetime.now(timezone.utc) - timedelta(days=self.snapshot_retention_days)
        try:
            removed = await asyncio.to_thread(self.store.prune_snapshots, cutoff)
        except PersistenceError as exc:
            logger.error("Snapshot pruning failed", error=str(exc))
            return
        if removed:
            logger.info("Pruned old snapshots", removed=removed, retention_days=self.snapshot_retention_days)

    async def tick(self, *, now: datetime | None = None) -> list[asyncio.Task[PatrolResult | None]]:
        """Start one patrol task per target and return the started tasks."""
        try:
            # Apdex and the error streak only look at recent history.
            since = (now or datetime.now(timezone.utc)) - APDEX_LOOKBACK
            targets = await asyncio.to_thread(self.store.list_all, history_since=since)
        except PersistenceError as exc:
            logger.error("Failed to load targets", error=str(exc))
            return []

        started: list[asyncio.Task[PatrolResult | None]] = []
        for target in targets:
            if target.id in self._in_flight:
                logger.warning("Previous patrol still running; skipping tick", target_id=target.id, name=target.name)
                continue
            task = asyncio.create_task(self._guarded_patrol(target, now), name=f"patrol:{target.id}")
            self._in_flight[target.id] = task
            started.append(task)

        await self._maybe_prune()
        return started

    async def run_once(self, *, now: datetime | None = None) -> list[PatrolResult]:
        tasks = await self.tick(now=now)
        if not tasks:
            return []
        results = await asyncio.gather(*tasks)
        return [r for r in results if r is not None]

    def start(self, tick_seconds: float = 60.0) -> None:
        if self._scheduler is not None:
            logger.warning("Patrol scheduler already running")
            return
        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=float(tick_seconds)),
            id=PATROL_JOB_ID,
            name="Patrol all targets",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(),
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Patrol scheduler started", tick_seconds=tick_seconds)

    async def stop(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        pending = list(self._in_flight.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Patrol scheduler stopped")

    async def run_forever(self, tick_seconds: float = 60.0) -> None:
        self.start(tick_seconds)
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()
