import hashlib
import json
import threading
import time
from abc import ABC, abstractmethod
from typing import Any

import structlog

from db import get_connection, release_connection

logger = structlog.get_logger(__name__)


def canonical_json(data: dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class AuditSink(ABC):
    @abstractmethod
    def record(self, event_type: str, severity: str, payload_json: str, entry_hash: str) -> None: ...

    @abstractmethod
    def list_recent(self, limit: int = 100) -> list[dict[str, Any]]: ...


class MemoryAuditSink(AuditSink):
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def record(self, event_type: str, severity: str, payload_json: str, entry_hash: str) -> None:
        with self._lock:
            self.events.append(
                {
                    "event_type": event_type,
                    "severity": severity,
                    "payload": json.loads(payload_json),
                    "entry_hash": entry_hash,
                }
            )

    def list_recent(self, limit: int = 100) -> list[dict[str, Any]]:
        with self._lock:
            return list(reversed(self.events[-limit:]))

    def types(self) -> list[str]:
        return [event["event_type"] for event in self.events]


class PostgresAuditSink(AuditSink):
    def record(self, event_type: str, severity: str, payload_json: str, entry_hash: str) -> None:
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute(
                """
                INSERT INTO audit_events (event_type, severity, payload_json, entry_hash)
                VALUES (%s, %s, %s, %s)
                """,
                (event_type, severity, payload_json, entry_hash),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cur.close()
            release_connection(conn)

    def list_recent(self, limit: int = 100) -> list[dict[str, Any]]:
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute(
                """
                SELECT event_type, severity, payload_json, entry_hash, created_at
                FROM audit_events
                ORDER BY created_at DESC, id DESC
                LIMIT %s
                """,
                (limit,),
            )
            rows = cur.fetchall()
        finally:
            cur.close()
            release_connection(conn)
        events: list[dict[str, Any]] = []
        for row in rows:
            try:
                payload = json.loads(row[2])
            except ValueError:
                payload = row[2]
            events.append(
                {
                    "event_type": row[0],
                    "severity": row[1],
                    "payload": payload,
                    "entry_hash": row[3],
                    "created_at": row[4].isoformat() if row[4] else None,
                }
            )
        return events


class AuditTrail:
    """Fire-and-forget audit emitter; a failing sink never reaches the caller."""

    def __init__(self, sink: AuditSink) -> None:
        self.sink = sink

    def emit(self, event_type: str, severity: str = "INFO", **payload: Any) -> None:
        entry = {
            "event_type": event_type,
            "severity": severity,
            "payload": payload,
            "timestamp": int(time.time()),
        }
        payload_json = canonical_json(entry)
        try:
            self.sink.record(event_type, severity, payload_json, sha256_hex(payload_json))
        except Exception as exc:  # noqa: BLE001
            logger.warning("audit_emit_failed", event_type=event_type, error=str(exc))

    def list_recent(self, limit: int = 100) -> list[dict[str, Any]]:
        return self.sink.list_recent(max(1, min(500, limit)))
