"""forge.core.notifications

Outbound notifications: a transactional outbox plus a webhook dispatcher.

Design goals:
- the outbox row commits with the state change it announces
- stdlib-only HTTP (urllib.request)
- best-effort delivery (never block/abort reconciliation)
- presentation layers may poll the outbox instead of subscribing
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
import urllib.error
import urllib.request
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel

from forge.core.config import NotificationsConfig
from forge.core.database import Database
from forge.core.events import EventType, canonical_json
from forge.core.metrics import NOTIFICATIONS_DISPATCHED, NOTIFICATIONS_FAILED, REGISTRY
from forge.core.models import Notification
from forge.core.time import dt_to_iso, iso_to_dt, utc_now

logger = logging.getLogger(__name__)


def enqueue(conn: sqlite3.Connection, event_type: EventType, payload: BaseModel | dict[str, Any]) -> int:
    """Write an outbox row on an open transaction."""

    body = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else payload
    cur = conn.execute(
        "INSERT INTO notifications (type, payload, created_at) VALUES (?, ?, ?)",
        (str(event_type), canonical_json(body), dt_to_iso(utc_now())),
    )
    return int(cur.lastrowid or 0)


def _row_to_notification(row: sqlite3.Row) -> Notification:
    return Notification(
        id=int(row["id"]),
        type=str(row["type"]),
        payload=json.loads(str(row["payload"])),
        created_at=iso_to_dt(str(row["created_at"])) or utc_now(),
        dispatched_at=iso_to_dt(row["dispatched_at"]),
    )


def list_notifications(
    db: Database,
    *,
    after_id: int = 0,
    event_type: str | None = None,
    limit: int = 100,
) -> list[Notification]:
    q = "SELECT * FROM notifications WHERE id > ?"
    params: list[Any] = [int(after_id)]
    if event_type is not None:
        q += " AND type = ?"
        params.append(event_type)
    q += " ORDER BY id ASC LIMIT ?"
    params.append(int(limit))
    return [_row_to_notification(r) for r in db.execute(q, tuple(params))]


def _post_json(url: str, payload: dict[str, Any], *, timeout_s: float) -> None:
    body = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=body,
        method="POST",
        headers={"Content-Type": "application/json", "User-Agent": "solar-forge-notifications/1"},
    )
    # urlopen timeout covers connect + read.
    with urllib.request.urlopen(req, timeout=timeout_s) as resp:  # noqa: S310
        _ = resp.read()  # drain


class NotificationDispatcher:
    """Pushes undispatched outbox rows to configured webhooks.

    A row is marked dispatched once every URL accepted it. Failed rows stay
    pending and are retried on the next pass.
    """

    def __init__(
        self,
        db: Database,
        config: NotificationsConfig,
        *,
        post: Callable[..., None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._db = db
        self._config = config
        self._post = post or _post_json
        self._sleep = sleep

    def pending(self, limit: int | None = None) -> list[Notification]:
        rows = self._db.execute(
            "SELECT * FROM notifications WHERE dispatched_at IS NULL ORDER BY id ASC LIMIT ?",
            (int(limit or self._config.batch_size),),
        )
        return [_row_to_notification(r) for r in rows]

    def dispatch_pending(self) -> int:
        """Deliver one batch. Returns the number of rows marked dispatched."""

        if not self._config.enabled:
            return 0

        sent = 0
        for n in self.pending():
            body = {
                "notification": {
                    "id": n.id,
                    "type": n.type,
                    "created_at": n.created_at.isoformat(),
                    "payload": n.payload,
                }
            }
            error = self._deliver_all(body)
            with self._db.transaction() as conn:
                if error is None:
                    conn.execute(
                        "UPDATE notifications SET dispatched_at = ?, attempts = attempts + 1, last_error = NULL "
                        "WHERE id = ? AND dispatched_at IS NULL",
                        (dt_to_iso(utc_now()), n.id),
                    )
                else:
                    conn.execute(
                        "UPDATE notifications SET attempts = attempts + 1, last_error = ? WHERE id = ?",
                        (error, n.id),
                    )
            if error is None:
                sent += 1
                REGISTRY.counter(NOTIFICATIONS_DISPATCHED).inc()
            else:
                REGISTRY.counter(NOTIFICATIONS_FAILED).inc()
                logger.warning("notification_dispatch_failed", extra={"notification_id": n.id, "error": error})
        return sent

    def _deliver_all(self, body: dict[str, Any]) -> str | None:
        last_error: str | None = None
        for url in self._config.webhook_urls:
            backoff_s = 0.5
            delivered = False
            for attempt in range(1, self._config.max_attempts + 1):
                try:
                    self._post(url, body, timeout_s=self._config.timeout_seconds)
                    delivered = True
                    break
                except (urllib.error.URLError, TimeoutError, ValueError, OSError) as e:
                    last_error = f"{url}: {e}"
                    if attempt < self._config.max_attempts:
                        self._sleep(backoff_s)
                        backoff_s *= 2
            if not delivered:
                return last_error
        return None
