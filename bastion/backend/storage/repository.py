"""
storage/repository.py

SQLite-backed Audit Sink.

VerdictRepository.record(verdict) is the Record(Verdict) -> ack contract:
it returns True once the row is committed and False on any database
failure. It never raises, so a broken disk cannot turn a decided event
into an exception on the caller's side.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from typing import Any

from ..engine.models import Verdict
from .database import Database

logger = logging.getLogger(__name__)

_JSON_COLUMNS = ("matched_rules", "matched_iocs", "layers")
_BOOL_COLUMNS = ("escalated", "quarantined", "fast_path", "degraded", "incomplete")


class VerdictRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    # ==================================================================
    # Write methods
    # ==================================================================

    def record(self, verdict: Verdict) -> bool:
        """Persist one verdict. Duplicate event ids are ignored (idempotent ack)."""
        try:
            layers_json = json.dumps(verdict.layers, default=str)
        except (TypeError, ValueError) as exc:
            logger.error("record: layer evidence not JSON-serializable: %s", exc)
            layers_json = json.dumps({"error": "non-serializable evidence"})

        try:
            with self._db.write_lock:
                self._db.execute(
                    """
                    INSERT OR IGNORE INTO verdicts (
                        event_id, timestamp, kind, subject_key, source_ip,
                        risk_score, classification, action, escalated, quarantined,
                        status_code, reason, matched_rules, matched_iocs,
                        layers, correlation_bonus, trust_score, fast_path,
                        degraded, incomplete, latency_ms, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        verdict.event_id,
                        verdict.timestamp,
                        verdict.kind,
                        verdict.subject_key,
                        verdict.source_ip,
                        verdict.risk_score,
                        verdict.classification.value,
                        verdict.action.value,
                        int(verdict.escalated),
                        int(verdict.quarantined),
                        verdict.status_code,
                        verdict.reason,
                        json.dumps(verdict.matched_rules),
                        json.dumps(verdict.matched_iocs),
                        layers_json,
                        verdict.correlation_bonus,
                        verdict.trust_score,
                        int(verdict.fast_path),
                        int(verdict.degraded),
                        int(verdict.incomplete),
                        verdict.latency_ms,
                        time.time(),
                    ),
                )
                self._db.commit()
            return True
        except sqlite3.Error as exc:
            logger.error("record verdict %s failed: %s", verdict.event_id, exc)
            return False

    def save_alert(self, alert: dict[str, Any]) -> bool:
        try:
            with self._db.write_lock:
                self._db.execute(
                    """
                    INSERT OR IGNORE INTO alerts (
                        alert_id, timestamp, kind, severity,
                        subject_key, event_id, message, details
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        alert["alert_id"],
                        alert["timestamp"],
                        alert["kind"],
                        alert["severity"],
                        alert.get("subject_key"),
                        alert.get("event_id"),
                        alert["message"],
                        json.dumps(alert.get("details", {}), default=str),
                    ),
                )
                self._db.commit()
            return True
        except sqlite3.Error as exc:
            logger.error("save_alert DB write failed: %s", exc)
            return False

    # ==================================================================
    # Read methods
    # ==================================================================

    def get_verdicts(
        self,
        limit: int = 100,
        offset: int = 0,
        action: str | None = None,
        classification: str | None = None,
        subject_key: str | None = None,
        since: float | None = None,
    ) -> list[dict]:
        where, params = self._build_where(
            action=action, classification=classification,
            subject_key=subject_key, since=since,
        )
        sql = f"""
            SELECT * FROM verdicts
            {where}
            ORDER BY timestamp DESC
            LIMIT ? OFFSET ?
        """
        params.extend([min(limit, 500), offset])
        rows = self._db.execute(sql, tuple(params)).fetchall()
        return [self._row_to_dict(r) for r in rows]

    def get_verdict_by_id(self, event_id: str) -> dict | None:
        row = self._db.execute(
            "SELECT * FROM verdicts WHERE event_id = ?", (event_id,)
        ).fetchone()
        return self._row_to_dict(row) if row else None

    def get_verdict_count(
        self,
        action: str | None = None,
        classification: str | None = None,
        subject_key: str | None = None,
        since: float | None = None,
    ) -> int:
        where, params = self._build_where(
            action=action, classification=classification,
            subject_key=subject_key, since=since,
        )
        row = self._db.execute(
            f"SELECT COUNT(*) FROM verdicts {where}", tuple(params)
        ).fetchone()
        return row[0] if row else 0

    def get_alerts(self, limit: int = 100) -> list[dict]:
        rows = self._db.execute(
            "SELECT * FROM alerts ORDER BY timestamp DESC LIMIT ?", (min(limit, 500),)
        ).fetchall()
        out = []
        for r in rows:
            d = dict(r)
            try:
                d["details"] = json.loads(d.get("details") or "{}")
            except (TypeError, json.JSONDecodeError):
                d["details"] = {}
            out.append(d)
        return out

    def get_stats_summary(self) -> dict:
        now = time.time()
        one_hour_ago = now - 3600

        total = self._db.execute("SELECT COUNT(*) FROM verdicts").fetchone()[0]
        last_hour = self._db.execute(
            "SELECT COUNT(*) FROM verdicts WHERE timestamp >= ?", (one_hour_ago,)
        ).fetchone()[0]

        action_rows = self._db.execute(
            "SELECT action, COUNT(*) FROM verdicts GROUP BY action"
        ).fetchall()
        class_rows = self._db.execute(
            "SELECT classification, COUNT(*) FROM verdicts GROUP BY classification"
        ).fetchall()

        subject_rows = self._db.execute(
            """
            SELECT subject_key, COUNT(*) as cnt, MAX(risk_score) as max_score
            FROM verdicts
            WHERE action != 'allow'
            GROUP BY subject_key ORDER BY cnt DESC LIMIT 10
            """
        ).fetchall()

        row = self._db.execute(
            "SELECT AVG(latency_ms), MAX(latency_ms), SUM(degraded) FROM verdicts"
        ).fetchone()
        avg_latency, max_latency, degraded = (row[0], row[1], row[2]) if row else (None, None, 0)

        return {
            "total_verdicts": total,
            "verdicts_last_hour": last_hour,
            "verdicts_by_action": {r[0]: r[1] for r in action_rows},
            "verdicts_by_classification": {r[0]: r[1] for r in class_rows},
            "top_blocked_subjects": [
                {"subject_key": r[0], "count": r[1], "max_risk_score": r[2]}
                for r in subject_rows
            ],
            "avg_latency_ms": round(avg_latency, 3) if avg_latency is not None else None,
            "max_latency_ms": round(max_latency, 3) if max_latency is not None else None,
            "degraded_verdicts": degraded or 0,
        }

    # ==================================================================
    # Internal helpers
    # ==================================================================

    @staticmethod
    def _build_where(
        action: str | None,
        classification: str | None,
        subject_key: str | None,
        since: float | None,
    ) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if action:
            clauses.append("action = ?")
            params.append(action.lower())
        if classification:
            clauses.append("classification = ?")
            params.append(classification.lower())
        if subject_key:
            clauses.append("subject_key = ?")
            params.append(subject_key)
        if since is not None:
            clauses.append("timestamp >= ?")
            params.append(since)
        where = "WHERE " + " AND ".join(clauses) if clauses else ""
        return where, params

    @staticmethod
    def _row_to_dict(row: Any) -> dict:
        d = dict(row)
        for col in _JSON_COLUMNS:
            try:
                d[col] = json.loads(d.get(col) or "null")
            except (TypeError, json.JSONDecodeError):
                d[col] = None
        for col in _BOOL_COLUMNS:
            d[col] = bool(d.get(col))
        return d
