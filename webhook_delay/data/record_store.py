from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Protocol

from loguru import logger


class BuildStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


# Persisted field names mirror the status payload.
_FIELD_TO_JSON = {
    "last_webhook_at": "lastWebhookAt",
    "scheduled_for": "scheduledFor",
    "last_build_at": "lastBuildAt",
    "last_build_status": "lastBuildStatus",
    "last_error": "lastError",
    "retry_count": "retryCount",
    "delay_ms": "delayMs",
    "webhook_url": "webhookUrl",
}


def _now_iso() -> str:
    return datetime.now().isoformat()


def _optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class SchedulingRecord:
    last_webhook_at: int | None = None
    scheduled_for: int | None = None
    last_build_at: int | None = None
    last_build_status: BuildStatus | None = None
    last_error: str | None = None
    retry_count: int = 0
    delay_ms: int | None = None
    webhook_url: str | None = None

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for name, value in asdict(self).items():
            if value is None:
                continue
            if isinstance(value, BuildStatus):
                value = value.value
            out[_FIELD_TO_JSON[name]] = value
        return out

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> "SchedulingRecord":
        status_raw = payload.get("lastBuildStatus")
        try:
            status = BuildStatus(status_raw) if status_raw else None
        except ValueError:
            status = None
        last_error = payload.get("lastError")
        webhook_url = payload.get("webhookUrl")
        return cls(
            last_webhook_at=_optional_int(payload.get("lastWebhookAt")),
            scheduled_for=_optional_int(payload.get("scheduledFor")),
            last_build_at=_optional_int(payload.get("lastBuildAt")),
            last_build_status=status,
            last_error=last_error if isinstance(last_error, str) else None,
            retry_count=max(0, _optional_int(payload.get("retryCount")) or 0),
            delay_ms=_optional_int(payload.get("delayMs")),
            webhook_url=webhook_url if isinstance(webhook_url, str) and webhook_url else None,
        )


class RecordStore(Protocol):
    def get(self, key: str) -> Optional[SchedulingRecord]: ...

    def put(self, key: str, record: SchedulingRecord) -> None: ...

    def list_scheduled(self) -> list[tuple[str, SchedulingRecord]]: ...


class MemoryRecordStore:
    """Process-local store, used in tests and for ephemeral runs."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[SchedulingRecord]:
        with self._lock:
            payload = self._records.get(key)
        if payload is None:
            return None
        return SchedulingRecord.from_json(payload)

    def put(self, key: str, record: SchedulingRecord) -> None:
        with self._lock:
            self._records[key] = record.to_json()

    def list_scheduled(self) -> list[tuple[str, SchedulingRecord]]:
        with self._lock:
            items = list(self._records.items())
        out = []
        for key, payload in items:
            record = SchedulingRecord.from_json(payload)
            if record.scheduled_for is not None:
                out.append((key, record))
        return out


class SqliteRecordStore:
    """Durable scheduling records, one JSON row per scheduler key."""

    def __init__(self, db_path: Path | str | None = None):
        self._db_path = Path(db_path) if db_path else (Path(__file__).resolve().parents[2] / "scheduler.db")
        self._lock = threading.Lock()
        self.init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def init_schema(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS scheduler_records (
                        key TEXT PRIMARY KEY,
                        payload TEXT NOT NULL DEFAULT '{}',
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.commit()

    def get(self, key: str) -> Optional[SchedulingRecord]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT payload FROM scheduler_records WHERE key = ?", (key,)).fetchone()
        if not row:
            return None
        return SchedulingRecord.from_json(self._decode(key, row["payload"]))

    def put(self, key: str, record: SchedulingRecord) -> None:
        payload = json.dumps(record.to_json(), ensure_ascii=False)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO scheduler_records (key, payload, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET payload = excluded.payload, updated_at = excluded.updated_at
                    """,
                    (key, payload, _now_iso()),
                )
                conn.commit()

    def list_scheduled(self) -> list[tuple[str, SchedulingRecord]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute("SELECT key, payload FROM scheduler_records ORDER BY key ASC").fetchall()
        out = []
        for row in rows:
            record = SchedulingRecord.from_json(self._decode(row["key"], row["payload"]))
            if record.scheduled_for is not None:
                out.append((row["key"], record))
        return out

    @staticmethod
    def _decode(key: str, raw: str | None) -> dict[str, Any]:
        try:
            payload = json.loads(raw or "{}")
        except json.JSONDecodeError:
            logger.warning(f"RecordStore: unreadable payload for key={key}, starting fresh")
            return {}
        return payload if isinstance(payload, dict) else {}
