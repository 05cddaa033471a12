"""forge.core.audit

Database-backed audit logger.

Anomalies are forensic evidence. They go somewhere durable, not just to stderr.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from forge.core.database import Database
from forge.core.time import dt_to_iso


@dataclass
class AuditLogger:
    """Writes integrity-relevant actions to the `audit_log` table."""

    db: Database
    component: str = "donations"

    def log_action(
        self,
        action: str,
        actor: str | None,
        details: dict[str, Any] | None = None,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """Record an action. Pass ``conn`` to join an open transaction."""

        payload = json.dumps(details or {}, sort_keys=True, default=str)
        sql = "INSERT INTO audit_log (action, actor, component, details) VALUES (?, ?, ?, ?)"
        params = (action, actor, self.component, payload)
        if conn is not None:
            conn.execute(sql, params)
            return
        with self.db.transaction() as c:
            c.execute(sql, params)

    def query(
        self,
        action_type: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        q = "SELECT ts, action, actor, component, details FROM audit_log WHERE 1=1"
        params: list[Any] = []

        if action_type is not None:
            q += " AND action = ?"
            params.append(action_type)

        if since is not None:
            q += " AND ts >= ?"
            params.append(dt_to_iso(since))

        q += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        rows = self.db.execute(q, tuple(params))
        out: list[dict[str, Any]] = []
        for r in rows:
            out.append(
                {
                    "ts": r[0],
                    "action": r[1],
                    "actor": r[2],
                    "component": r[3],
                    "details": json.loads(r[4]) if r[4] else {},
                }
            )
        return out
