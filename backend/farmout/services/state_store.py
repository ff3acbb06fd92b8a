"""SQLite-backed durable state for farm-out automation.

Holds what must survive a restart or be visible to other consoles: dispatch
settings, the per-driver cooldown ledger, offer history (including the pending
offers the driver portal shows), the automation activity log and the outbound
message outbox. Active jobs are never persisted; they are re-derived from
reservation state on startup.
"""
from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Optional

from farmout.core.config import get_settings
from farmout.core.logging import logger


IN_MEMORY = ":memory:"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, default=str)


def _parse_iso_utc(value: str | None) -> datetime | None:
    if not value:
        return None
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class FarmoutStateStore:
    """Durable key/value, ledger and log storage for the dispatch engine."""

    def __init__(self, db_path: str | None = None) -> None:
        path = (db_path if db_path is not None else get_settings().state_db_path) or IN_MEMORY
        self._lock = RLock()
        self._conn = self._connect(path)
        self._conn.row_factory = sqlite3.Row
        self._initialize_schema()

    def _connect(self, path: str) -> sqlite3.Connection:
        if path != IN_MEMORY:
            try:
                Path(path).parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(path, check_same_thread=False, timeout=30.0)
                conn.execute("PRAGMA journal_mode = WAL")
                conn.execute("PRAGMA synchronous = NORMAL")
                self.db_path = path
                return conn
            except (OSError, sqlite3.Error) as exc:
                logger.warning("State store unavailable, using in-memory state", path=path, error=str(exc))
        self.db_path = IN_MEMORY
        return sqlite3.connect(IN_MEMORY, check_same_thread=False)

    def _initialize_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sequences (
                    key_name TEXT PRIMARY KEY,
                    next_value INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS kv (
                    key_name TEXT PRIMARY KEY,
                    data_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS driver_cooldowns (
                    driver_id TEXT PRIMARY KEY,
                    last_offer_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS offers (
                    offer_id TEXT PRIMARY KEY,
                    reservation_id TEXT NOT NULL,
                    driver_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    in_app INTEGER NOT NULL DEFAULT 0,
                    issued_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_offers_driver_status ON offers (driver_id, status);
                CREATE INDEX IF NOT EXISTS idx_offers_reservation ON offers (reservation_id);

                CREATE TABLE IF NOT EXISTS activity (
                    event_id TEXT PRIMARY KEY,
                    reservation_id TEXT,
                    message TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_activity_reservation ON activity (reservation_id, timestamp DESC);

                CREATE TABLE IF NOT EXISTS outbox (
                    message_id TEXT PRIMARY KEY,
                    address TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    body TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    def _next_sequence(self, key: str) -> int:
        row = self._conn.execute(
            "SELECT next_value FROM sequences WHERE key_name = ?",
            (key,),
        ).fetchone()
        if row is None:
            current = 1
            self._conn.execute(
                "INSERT INTO sequences (key_name, next_value) VALUES (?, ?)",
                (key, current + 1),
            )
            return current
        value = int(row["next_value"])
        self._conn.execute(
            "UPDATE sequences SET next_value = ? WHERE key_name = ?",
            (value + 1, key),
        )
        return value

    def next_offer_id(self) -> str:
        with self._lock:
            value = self._next_sequence("offer")
            self._conn.commit()
        return f"OFR-{value:06d}"

    # ---- key/value ----

    def get_value(self, key: str) -> Optional[Any]:
        with self._lock:
            row = self._conn.execute("SELECT data_json FROM kv WHERE key_name = ?", (key,)).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["data_json"])
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable stored value", key=key)
            return None

    def set_value(self, key: str, value: Any) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO kv (key_name, data_json, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key_name) DO UPDATE SET data_json = excluded.data_json, updated_at = excluded.updated_at
                """,
                (key, _json_dumps(value), _utc_now_iso()),
            )
            self._conn.commit()

    # ---- cooldown ledger ----

    def record_driver_offer(self, driver_id: str, offered_at: datetime) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO driver_cooldowns (driver_id, last_offer_at) VALUES (?, ?)
                ON CONFLICT(driver_id) DO UPDATE SET last_offer_at = excluded.last_offer_at
                """,
                (str(driver_id), offered_at.astimezone(timezone.utc).isoformat()),
            )
            self._conn.commit()

    def cooldown_ledger(self) -> Dict[str, datetime]:
        with self._lock:
            rows = self._conn.execute("SELECT driver_id, last_offer_at FROM driver_cooldowns").fetchall()
        ledger: Dict[str, datetime] = {}
        for row in rows:
            parsed = _parse_iso_utc(row["last_offer_at"])
            if parsed is not None:
                ledger[row["driver_id"]] = parsed
        return ledger

    # ---- offers ----

    def save_offer(self, offer: Dict[str, Any], in_app: bool = False) -> Dict[str, Any]:
        now = _utc_now_iso()
        with self._lock:
            existing = self._conn.execute(
                "SELECT in_app FROM offers WHERE offer_id = ?", (offer["offer_id"],)
            ).fetchone()
            flag = bool(in_app) or bool(existing and existing["in_app"])
            self._conn.execute(
                """
                INSERT INTO offers (offer_id, reservation_id, driver_id, status, in_app, issued_at, updated_at, data_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(offer_id) DO UPDATE SET
                    status = excluded.status,
                    in_app = excluded.in_app,
                    updated_at = excluded.updated_at,
                    data_json = excluded.data_json
                """,
                (
                    offer["offer_id"],
                    str(offer["reservation_id"]),
                    str(offer["driver_id"]),
                    str(offer["status"]),
                    int(flag),
                    str(offer.get("issued_at") or now),
                    now,
                    _json_dumps(offer),
                ),
            )
            self._conn.commit()
        return offer

    def get_offer(self, offer_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute("SELECT data_json FROM offers WHERE offer_id = ?", (offer_id,)).fetchone()
        return json.loads(row["data_json"]) if row else None

    def list_pending_offers(self, driver_id: Optional[str] = None, in_app_only: bool = True) -> List[Dict[str, Any]]:
        query = "SELECT data_json FROM offers WHERE status = 'pending'"
        params: list[Any] = []
        if in_app_only:
            query += " AND in_app = 1"
        if driver_id:
            query += " AND driver_id = ?"
            params.append(str(driver_id))
        query += " ORDER BY issued_at DESC"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [json.loads(row["data_json"]) for row in rows]

    def list_offers(self, reservation_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT data_json FROM offers WHERE reservation_id = ? ORDER BY issued_at ASC, offer_id ASC",
                (str(reservation_id),),
            ).fetchall()
        return [json.loads(row["data_json"]) for row in rows]

    def expire_stale_offers(self) -> int:
        """Expire every offer still marked pending. Used on startup reconciliation."""
        stale = self.list_pending_offers(in_app_only=False)
        for offer in stale:
            offer["status"] = "expired"
            self.save_offer(offer)
        return len(stale)

    # ---- activity log ----

    def record_activity(self, reservation_id: Optional[str], message: str) -> Dict[str, Any]:
        with self._lock:
            event_id = f"ACT-{self._next_sequence('activity'):06d}"
            row = {
                "event_id": event_id,
                "reservation_id": str(reservation_id) if reservation_id is not None else None,
                "message": message,
                "timestamp": _utc_now_iso(),
            }
            self._conn.execute(
                "INSERT INTO activity (event_id, reservation_id, message, timestamp) VALUES (?, ?, ?, ?)",
                (row["event_id"], row["reservation_id"], row["message"], row["timestamp"]),
            )
            self._conn.commit()
        return row

    def list_activity(self, reservation_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        limit = max(1, min(int(limit or 100), 1000))
        with self._lock:
            if reservation_id is None:
                rows = self._conn.execute(
                    "SELECT * FROM activity ORDER BY timestamp DESC, rowid DESC LIMIT ?", (limit,)
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM activity WHERE reservation_id = ? ORDER BY timestamp DESC, rowid DESC LIMIT ?",
                    (str(reservation_id), limit),
                ).fetchall()
        return [dict(row) for row in rows]

    # ---- outbox ----

    def add_outbox_message(self, address: str, body: str, kind: str) -> Dict[str, Any]:
        with self._lock:
            message_id = f"MSG-{self._next_sequence('message'):06d}"
            row = {
                "message_id": message_id,
                "address": address,
                "kind": kind,
                "body": body,
                "created_at": _utc_now_iso(),
            }
            self._conn.execute(
                "INSERT INTO outbox (message_id, address, kind, body, created_at) VALUES (?, ?, ?, ?, ?)",
                (row["message_id"], row["address"], row["kind"], row["body"], row["created_at"]),
            )
            self._conn.commit()
        return row

    def list_outbox(self, address: Optional[str] = None, kind: Optional[str] = None, limit: int = 200) -> List[Dict[str, Any]]:
        query = "SELECT * FROM outbox WHERE 1 = 1"
        params: list[Any] = []
        if address:
            query += " AND address = ?"
            params.append(address)
        if kind:
            query += " AND kind = ?"
            params.append(kind)
        query += " ORDER BY created_at ASC, rowid ASC LIMIT ?"
        params.append(max(1, min(int(limit or 200), 1000)))
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
