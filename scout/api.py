from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import Body, FastAPI, HTTPException

from scout.apdex import APDEX_LOOKBACK
from scout.errors import ConfigurationError, PersistenceError
from scout.models import Target
from scout.settings import ScoutSettings
from scout.store import TargetStore


def target_summary(target: Target) -> dict[str, Any]:
    last = target.last_snapshot
    return {
        "id": target.id,
        "name": target.name,
        "tags": list(target.tags),
        "method": target.method,
        "url": target.url,
        "interval": target.interval,
        "next_patrol": target.next_patrol,
        "last_status": last.status.value if last else None,
        "last_checked_at": last.timestamp.isoformat() if last else None,
        "apdex": target.apdex(),
        "apdex_target": target.apdex_target,
    }


def create_app(settings: ScoutSettings | None = None, store: TargetStore | None = None) -> FastAPI:
    app = FastAPI(title="Scout", version="0.1.0")
    app.state.settings = settings or ScoutSettings()
    app.state.store = store or TargetStore(app.state.settings.db_path)

    async def _call_store(fn, *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except PersistenceError as exc:
            raise HTTPException(status_code=503, detail=f"store_unavailable: {exc}") from exc

    async def _get_or_404(target_id: str) -> Target:
        target = await _call_store(app.state.store.get, target_id)
        if target is None:
            raise HTTPException(status_code=404, detail="not_found")
        return target

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"ok": True, "ts": time.time()}

    @app.get("/api/v1/targets")
    async def api_list_targets() -> dict[str, Any]:
        since = datetime.now(timezone.utc) - APDEX_LOOKBACK
        targets = await _call_store(app.state.store.list_all, history_since=since)
        return {"ok": True, "targets": [target_summary(t) for t in targets]}

    @app.post("/api/v1/targets")
    async def api_create_target(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        """
        Create a target. ``tolerance`` is the number of consecutive errors that
        triggers an alert; 0 and 1 both alert on the first error.
        """
        # Countdown and history are owned by the patrol loop.
        data = {k: v for k, v in payload.items() if k not in {"next_patrol", "snapshots"}}
        try:
            created = await _call_store(app.state.store.create, data)
        except ConfigurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"ok": True, "target": target_summary(created)}

    @app.get("/api/v1/targets/{target_id}")
    async def api_get_target(target_id: str) -> dict[str, Any]:
        target = await _get_or_404(target_id)
        return {"ok": True, "target": target.model_dump(mode="json")}

    @app.get("/api/v1/targets/{target_id}/apdex")
    async def api_get_apdex(target_id: str) -> dict[str, Any]:
        target = await _get_or_404(target_id)
        return {"ok": True, "apdex": target.apdex(), "apdex_target": target.apdex_target}

    @app.delete("/api/v1/targets/{target_id}")
    async def api_delete_target(target_id: str) -> dict[str, Any]:
        deleted = await _call_store(app.state.store.delete, target_id)
        if not deleted:
            raise HTTPException(status_code=404, detail="not_found")
        return {"ok": True}

    return app
