from __future__ import annotations

import json
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

import structlog
from pydantic import ValidationError

from scout.errors import ConfigurationError, PersistenceError
from scout.models import Snapshot, Target, parse_target


logger = structlog.get_logger(__name__)

SCHEMA_VERSION = 2

# Columns persisted per snapshot row, in insert order.
_SNAPSHOT_COLUMNS = ("ts", "status", "status_code", "response_time", "err_message", "body")
# Target fields stored outside definition_json.
_ROW_FIELDS = {"id", "next_patrol", "snapshots"}


def _utc_ts() -> float:
    return float(time.time())


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True)


def _snapshot_row(target_id: str, snap: Snapshot) -> tuple[Any, ...]:
    return (
        target_id,
        snap.timestamp.timestamp(),
        snap.status.value,
        snap.status_code,
        snap.response_time,
        snap.err_message,
        snap.body,
    )


def _snapshot_from_row(row: sqlite3.Row) -> Snapshot:
    return Snapshot(
        timestamp=datetime.fromtimestamp(float(row["ts"]), tz=timezone.utc),
        status=row["status"],
        status_code=row["status_code"],
        response_time=row["response_time"],
        err_message=row["err_message"],
        body=row["body"],
    )


class TargetStore:
    """
    SQLite-backed collection of targets and their snapshot history.

    Each call opens its own connection so the store can be used from worker
    threads (``asyncio.to_thread``). A save is a single transaction covering
    the target row and the snapshot it appends.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self.ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        p = str(self.db_path or "").strip()
        if not p:
            raise PersistenceError("missing db_path")
        Path(p).parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON;")
            conn.execute("PRAGMA busy_timeout = 5000;")
            conn.execute("PRAGMA journal_mode = WAL;")
        except sqlite3.Error as exc:
            raise PersistenceError(f"cannot open {p}: {exc}") from exc
        return conn

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        except sqlite3.Error as exc:
            raise PersistenceError(f"{type(exc).__name__}: {exc}") from exc
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        with self._session() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
            row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
            cur = int(row["v"]) if row and row["v"] else 0
            if cur >= SCHEMA_VERSION:
                return
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS targets (
                  id TEXT PRIMARY KEY,
                  name TEXT NOT NULL,
                  definition_json TEXT NOT NULL,
                  next_patrol INTEGER NOT NULL DEFAULT 0,
                  created_at_ts REAL NOT NULL,
                  updated_at_ts REAL NOT NULL
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS snapshots (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  target_id TEXT NOT NULL REFERENCES targets(id) ON DELETE CASCADE,
                  ts REAL NOT NULL,
                  status TEXT NOT NULL, -- OK|Error|Idle
                  status_code INTEGER,
                  response_time REAL,
                  err_message TEXT,
                  body TEXT
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_snapshots_target ON snapshots(target_id, id);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_snapshots_ts ON snapshots(ts);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_snapshots_target_ts ON snapshots(target_id, ts);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_snapshots_target_status ON snapshots(target_id, status, id);")
            conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))

    def _load(
        self,
        conn: sqlite3.Connection,
        rows: list[sqlite3.Row],
        history_since: datetime | None = None,
    ) -> list[Target]:
        if not rows:
            return []
        ids = [str(r["id"]) for r in rows]
        placeholders = ",".join("?" for _ in ids)
        snaps_by_target: dict[str, list[Snapshot]] = {i: [] for i in ids}
        if history_since is None:
            query = f"SELECT * FROM snapshots WHERE target_id IN ({placeholders}) ORDER BY target_id, id"
            params: list[Any] = list(ids)
        else:
            # Per target, keep the tail from whichever comes first: the first
            # snapshot newer than history_since, or the most recent OK. Without
            # any OK the whole error streak is kept.
            query = f"""
                WITH bounds AS (
                  SELECT target_id,
                         COALESCE(MAX(CASE WHEN status = 'OK' THEN id END), 0) AS ok_id,
                         MIN(CASE WHEN ts > ? THEN id END) AS recent_id
                  FROM snapshots
                  WHERE target_id IN ({placeholders})
                  GROUP BY target_id
                )
                SELECT s.* FROM snapshots s
                JOIN bounds b ON b.target_id = s.target_id
                WHERE s.id >= MIN(b.ok_id, COALESCE(b.recent_id, b.ok_id))
                ORDER BY s.target_id, s.id
            """
            params = [history_since.timestamp(), *ids]
        for srow in conn.execute(query, params):
            snaps_by_target[str(srow["target_id"])].append(_snapshot_from_row(srow))

        targets: list[Target] = []
        for row in rows:
            target_id = str(row["id"])
            try:
                definition = json.loads(str(row["definition_json"]))
                targets.append(
                    Target.model_validate(
                        {
                            **definition,
                            "id": target_id,
                            "next_patrol": int(row["next_patrol"]),
                            "snapshots": snaps_by_target[target_id],
                        }
                    )
                )
            except (ValueError, ValidationError) as exc:
                logger.error("Skipping unreadable target", target_id=target_id, error=str(exc))
        return targets

    def list_all(self, *, history_since: datetime | None = None) -> list[Target]:
        """
        All targets in creation order. With ``history_since`` each target carries
        only the recent tail of its snapshots: everything after history_since
        plus the rows back to its most recent OK. Use ``get`` for full history.
        """
        with self._session() as conn:
            rows = conn.execute("SELECT * FROM targets ORDER BY created_at_ts, id").fetchall()
            return self._load(conn, rows, history_since)

    def get(self, target_id: str) -> Target | None:
        with self._session() as conn:
            rows = conn.execute("SELECT * FROM targets WHERE id=?", (target_id,)).fetchall()
            loaded = self._load(conn, rows)
            return loaded[0] if loaded else None

    def create(self, data: Target | dict[str, Any]) -> Target:
        target = parse_target(data)
        now = _utc_ts()
        definition = target.model_dump(mode="json", exclude=_ROW_FIELDS)
        with self._session() as conn:
            conn.execute("BEGIN IMMEDIATE;")
            try:
                conn.execute(
                    "INSERT INTO targets (id, name, definition_json, next_patrol, created_at_ts, updated_at_ts)"
                    " VALUES (?, ?, ?, ?, ?, ?)",
                    (target.id, target.name, _json_dumps(definition), target.next_patrol, now, now),
                )
                conn.executemany(
                    f"INSERT INTO snapshots (target_id, {', '.join(_SNAPSHOT_COLUMNS)}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    [_snapshot_row(target.id, s) for s in target.snapshots],
                )
            except sqlite3.IntegrityError as exc:
                conn.execute("ROLLBACK;")
                raise ConfigurationError(f"target {target.id} already exists") from exc
            except sqlite3.Error:
                conn.execute("ROLLBACK;")
                raise
            conn.execute("COMMIT;")
        logger.info("Target created", target_id=target.id, name=target.name)
        return target

    def save(self, target: Target, snapshot: Snapshot | None = None) -> bool:
        """
        Persist the target's configuration and countdown, appending ``snapshot``
        in the same transaction. Returns False when the target no longer exists.
        """
        definition = target.model_dump(mode="json", exclude=_ROW_FIELDS)
        with self._session() as conn:
            conn.execute("BEGIN IMMEDIATE;")
            try:
                cur = conn.execute(
                    "UPDATE targets SET name=?, definition_json=?, next_patrol=?, updated_at_ts=? WHERE id=?",
                    (target.name, _json_dumps(definition), int(target.next_patrol), _utc_ts(), target.id),
                )
                if cur.rowcount == 0:
                    conn.execute("ROLLBACK;")
                    return False
                if snapshot is not None:
                    conn.execute(
                        f"INSERT INTO snapshots (target_id, {', '.join(_SNAPSHOT_COLUMNS)}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                        _snapshot_row(target.id, snapshot),
                    )
            except sqlite3.Error:
                conn.execute("ROLLBACK;")
                raise
            conn.execute("COMMIT;")
            return True

    def delete(self, target_id: str) -> bool:
        with self._session() as conn:
            cur = conn.execute("DELETE FROM targets WHERE id=?", (target_id,))
            return cur.rowcount > 0

    def prune_snapshots(self, before: datetime) -> int:
        with self._session() as conn:
            cur = conn.execute("DELETE FROM snapshots WHERE ts < ?", (before.timestamp(),))
            return int(cur.rowcount or 0)
