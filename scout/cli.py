from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
from pathlib import Path

import httpx
import structlog
import uvicorn

from scout.alerts import AlertDispatcher
from scout.api import create_app
from scout.errors import ConfigurationError, PersistenceError
from scout.importer import load_targets_file
from scout.patrol import PatrolScheduler
from scout.probe import ProbeExecutor
from scout.settings import ScoutSettings, get_settings
from scout.store import TargetStore


logger = structlog.get_logger(__name__)

USER_AGENT = "Scout Uptime Monitor"


def configure_logging(level: str) -> None:
    log_level = getattr(logging, str(level).upper(), logging.INFO)
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    # Keep alert and probe URLs out of the request logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def build_scheduler(settings: ScoutSettings, store: TargetStore, client: httpx.AsyncClient) -> PatrolScheduler:
    executor = ProbeExecutor(
        client,
        timeout_seconds=settings.request_timeout_seconds,
        tz=settings.load_timezone(),
    )
    dispatcher = AlertDispatcher(client, settings_provider=get_settings)
    return PatrolScheduler(
        store,
        executor,
        dispatcher,
        concurrency=settings.concurrency,
        patrol_timeout_seconds=settings.patrol_timeout_seconds,
        snapshot_retention_days=settings.snapshot_retention_days,
    )


async def run_patrol(settings: ScoutSettings, *, once: bool) -> int:
    store = TargetStore(settings.db_path)
    async with httpx.AsyncClient(headers={"User-Agent": USER_AGENT}, follow_redirects=True) as client:
        scheduler = build_scheduler(settings, store, client)
        if once:
            results = await scheduler.run_once()
            probed = [r for r in results if r.probed]
            logger.info("Patrol pass complete", targets=len(results), probed=len(probed))
            return 0
        await scheduler.run_forever(settings.tick_seconds)
    return 0


async def serve(settings: ScoutSettings) -> int:
    store = TargetStore(settings.db_path)
    app = create_app(settings, store)
    async with httpx.AsyncClient(headers={"User-Agent": USER_AGENT}, follow_redirects=True) as client:
        scheduler = build_scheduler(settings, store, client)
        scheduler.start(settings.tick_seconds)
        server = uvicorn.Server(
            uvicorn.Config(app, host=settings.api_host, port=settings.api_port, log_level=settings.log_level.lower())
        )
        try:
            await server.serve()
        finally:
            await scheduler.stop()
    return 0


def import_targets(settings: ScoutSettings, path: Path) -> int:
    try:
        targets = load_targets_file(path)
        store = TargetStore(settings.db_path)
    except (ConfigurationError, PersistenceError) as exc:
        logger.error("Import failed", path=str(path), error=str(exc))
        return 2

    created = 0
    for target in targets:
        try:
            store.create(target)
            created += 1
        except ConfigurationError as exc:
            logger.warning("Skipping target", name=target.name, error=str(exc))
    logger.info("Import complete", path=str(path), created=created, skipped=len(targets) - created)
    return 0


def main(argv: list[str] | None = None) -> int:
    settings = get_settings()

    parser = argparse.ArgumentParser(prog="scout", description="Scout uptime monitor")
    parser.add_argument("--db", default=settings.db_path, help="Path to the SQLite target store")
    parser.add_argument("--log-level", default=settings.log_level, help="Logging level (INFO, WARNING, ...)")
    sub = parser.add_subparsers(dest="command", required=True)

    run_p = sub.add_parser("run", help="Patrol all targets on the global tick")
    run_p.add_argument("--once", action="store_true", help="Run one patrol pass and exit")

    sub.add_parser("serve", help="Serve the HTTP API and patrol in the same process")

    import_p = sub.add_parser("import", help="Create targets from a YAML file")
    import_p.add_argument("path", type=Path)

    args = parser.parse_args(argv)
    settings = dataclasses.replace(settings, db_path=str(args.db), log_level=str(args.log_level))
    configure_logging(settings.log_level)

    if args.command == "run":
        return asyncio.run(run_patrol(settings, once=bool(args.once)))
    if args.command == "serve":
        return asyncio.run(serve(settings))
    return import_targets(settings, args.path)


if __name__ == "__main__":
    raise SystemExit(main())
