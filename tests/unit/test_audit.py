from __future__ import annotations

from pathlib import Path

from forge.core.audit import AuditLogger
from forge.core.database import Database


def test_audit_log_writes_and_queries(temp_dir: Path) -> None:
    db = Database(temp_dir / "forge.db")
    audit = AuditLogger(db, component="unit")

    audit.log_action("correlation_anomaly", actor="tester", details={"leg_tx_id": "X"})
    audit.log_action("leg_after_expiry", actor="tester", details={"k": "v"})

    rows = audit.query(action_type="correlation_anomaly")
    assert len(rows) == 1
    assert rows[0]["actor"] == "tester"
    assert rows[0]["component"] == "unit"
    assert rows[0]["details"]["leg_tx_id"] == "X"

    assert len(audit.query()) == 2

    db.close()


def test_audit_joins_open_transaction(temp_dir: Path) -> None:
    db = Database(temp_dir / "forge.db")
    audit = AuditLogger(db)

    try:
        with db.transaction() as conn:
            audit.log_action("correlation_conflict", "unit", {"n": 1}, conn=conn)
            raise RuntimeError("roll back")
    except RuntimeError:
        pass

    assert audit.query() == []
    db.close()
