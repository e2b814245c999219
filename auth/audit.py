"""
auth/audit.py -- Security event sink.

Every event goes to the "bankdvwa.audit" logger and, best effort, to the
audit_log table. record() never raises: a broken audit table must not turn a
successful login (or a denied request) into a 500.

Layer rule: no imports from api/, web/ or bank/.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import AuditEvent
from core.config import now_iso

logger = logging.getLogger("bankdvwa.audit")

_metadata = MetaData()

_audit_log = Table(
    "audit_log",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event", String(64), nullable=False),
    Column("user_id", Integer),
    Column("attributes", Text, nullable=False),  # JSON object
    Column("created_at", String(32), nullable=False),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


class AuditLog:
    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def record(self, event_name: str, **attributes: Any) -> None:
        """Log a security event. Failures are logged, never raised."""
        user_id = attributes.get("user_id")
        logger.info("%s %s", event_name, json.dumps(attributes, default=str, sort_keys=True))
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _audit_log.insert().values(
                        event=event_name,
                        user_id=user_id if isinstance(user_id, int) else None,
                        attributes=json.dumps(attributes, default=str),
                        created_at=now_iso(),
                    )
                )
        except SQLAlchemyError:
            logger.exception("Failed to persist audit event %s", event_name)

    def recent(self, limit: int = 20) -> list[AuditEvent]:
        with self.engine.connect() as conn:
            rows = conn.execute(_audit_log.select().order_by(_audit_log.c.id.desc()).limit(limit)).fetchall()
        return [_row_to_event(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


def _row_to_event(row) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        event=row.event,
        user_id=row.user_id,
        attributes=json.loads(row.attributes) if row.attributes else {},
        created_at=row.created_at,
    )
