"""
security/levels.py -- SQLAlchemy Core persistence for per-vulnerability security levels.

Pattern: Repository + Data Mapper (same as auth/store.py). SecurityLevelStore
is the repository; _row_to_setting is the mapper. Routes never touch SQL.

Invariants:
  Every known vulnerability identifier has exactly one current level. Rows are
  seeded at construction (seed_defaults) and afterwards only overwritten,
  never deleted. Unknown identifiers resolve to the configured default.

  reset_all() runs inside a single transaction: either every known
  vulnerability is back at the default, or nothing changed and
  StoreWriteFailure is raised.

Security:
  All queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import Column, Integer, MetaData, String, Table, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from core.config import now_iso
from core.errors import InvalidLevel, StoreWriteFailure
from core.models import KNOWN_VULNERABILITIES, Level, SecurityLevelSetting

logger = logging.getLogger("bankdvwa.security.levels")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_security_levels = Table(
    "security_levels",
    _metadata,
    Column("vulnerability_id", String(64), primary_key=True),
    Column("level", String(16), nullable=False),
    Column("updated_by", Integer),  # NULL for install-time defaults
    Column("updated_at", String(32), nullable=False),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SecurityLevelStore:
    """Repository for SecurityLevelSetting records.

    Usage:
        store = SecurityLevelStore(db_url, default_level=Level.LOW)
        store.get_level("sql_injection")              # Level.LOW
        store.set_level("sql_injection", "high", actor_user_id=1)
        store.reset_all(actor_user_id=1)
        store.close()
    """

    def __init__(
        self,
        db_url: str,
        default_level: Level | str = Level.LOW,
        vulnerabilities: Iterable[str] = KNOWN_VULNERABILITIES,
    ) -> None:
        default = Level.parse(default_level)
        if default is None:
            raise InvalidLevel()
        self.default_level: Level = default
        self.known: tuple[str, ...] = tuple(dict.fromkeys(vulnerabilities))

        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self.seed_defaults()

    def seed_defaults(self) -> int:
        """Insert a default row for every known vulnerability that has none.

        Idempotent -- safe to call on every startup. Returns rows inserted.
        """
        with self.engine.begin() as conn:
            existing = {r.vulnerability_id for r in conn.execute(_security_levels.select()).fetchall()}
            missing = [v for v in self.known if v not in existing]
            if missing:
                conn.execute(
                    _security_levels.insert(),
                    [
                        {
                            "vulnerability_id": v,
                            "level": self.default_level.value,
                            "updated_by": None,
                            "updated_at": now_iso(),
                        }
                        for v in missing
                    ],
                )
        return len(missing)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_level(self, vulnerability_id: str) -> Level:
        """Return the stored level, or the default if unset or unreadable. Never raises."""
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    _security_levels.select().where(_security_levels.c.vulnerability_id == vulnerability_id)
                ).fetchone()
        except SQLAlchemyError:
            logger.exception("Security level read failed for %r; using default", vulnerability_id)
            return self.default_level
        if row is None:
            return self.default_level
        return Level.parse(row.level) or self.default_level

    def get_setting(self, vulnerability_id: str) -> SecurityLevelSetting | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _security_levels.select().where(_security_levels.c.vulnerability_id == vulnerability_id)
            ).fetchone()
        return _row_to_setting(row, self.default_level) if row is not None else None

    def get_all_settings(self) -> list[SecurityLevelSetting]:
        """Full records, known vulnerabilities first in registry order."""
        with self.engine.connect() as conn:
            rows = conn.execute(_security_levels.select().order_by(_security_levels.c.vulnerability_id)).fetchall()
        by_id = {r.vulnerability_id: _row_to_setting(r, self.default_level) for r in rows}
        ordered = [by_id.pop(v, SecurityLevelSetting(v, self.default_level)) for v in self.known]
        return ordered + list(by_id.values())

    def get_all_levels(self) -> dict[str, Level]:
        """Snapshot mapping of vulnerability id -> level."""
        return {s.vulnerability_id: s.level for s in self.get_all_settings()}

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set_level(self, vulnerability_id: str, level: Level | str, actor_user_id: int | None) -> SecurityLevelSetting:
        """Upsert the level for one vulnerability.

        Raises InvalidLevel for anything but low/medium/high/impossible and
        StoreWriteFailure when the write fails. Setting the level a record
        already has leaves the record untouched, so repeated calls produce the
        same stored state.
        """
        parsed = Level.parse(level)
        if parsed is None:
            raise InvalidLevel()
        if not vulnerability_id or len(vulnerability_id) > 64:
            raise InvalidLevel("Unknown vulnerability identifier.")

        try:
            with self.engine.begin() as conn:
                row = conn.execute(
                    _security_levels.select().where(_security_levels.c.vulnerability_id == vulnerability_id)
                ).fetchone()
                if row is not None and row.level == parsed.value:
                    return _row_to_setting(row, self.default_level)
                values = {"level": parsed.value, "updated_by": actor_user_id, "updated_at": now_iso()}
                if row is None:
                    conn.execute(_security_levels.insert().values(vulnerability_id=vulnerability_id, **values))
                else:
                    conn.execute(
                        _security_levels.update()
                        .where(_security_levels.c.vulnerability_id == vulnerability_id)
                        .values(**values)
                    )
        except SQLAlchemyError as exc:
            logger.exception("Security level write failed for %r", vulnerability_id)
            raise StoreWriteFailure() from exc

        logger.info("Security level for %s set to %s by user %s", vulnerability_id, parsed.value, actor_user_id)
        return SecurityLevelSetting(vulnerability_id, parsed, actor_user_id, values["updated_at"])

    def set_levels(self, levels: dict[str, Level | str], actor_user_id: int | None) -> None:
        """Apply several levels in one transaction (admin settings form).

        Every value is validated before any write, so a bad entry leaves all
        levels unchanged.
        """
        parsed: dict[str, Level] = {}
        for vulnerability_id, level in levels.items():
            lvl = Level.parse(level)
            if lvl is None:
                raise InvalidLevel()
            parsed[vulnerability_id] = lvl
        current = self.get_all_levels()
        changed = {v: lvl for v, lvl in parsed.items() if current.get(v) != lvl or v not in current}
        if not changed:
            return
        try:
            with self.engine.begin() as conn:
                for vulnerability_id, lvl in changed.items():
                    self._upsert(conn, vulnerability_id, lvl, actor_user_id)
        except SQLAlchemyError as exc:
            logger.exception("Bulk security level update failed")
            raise StoreWriteFailure() from exc

    def reset_all(self, actor_user_id: int | None) -> int:
        """Overwrite every known vulnerability with the default level.

        One transaction: any failure rolls back every row and raises
        StoreWriteFailure, so callers never observe a partial reset.
        Returns the number of records reset.
        """
        try:
            with self.engine.begin() as conn:
                for vulnerability_id in self.known:
                    self._upsert(conn, vulnerability_id, self.default_level, actor_user_id)
        except SQLAlchemyError as exc:
            logger.exception("Security level reset failed; no levels were changed")
            raise StoreWriteFailure() from exc
        logger.info("All security levels reset to %s by user %s", self.default_level.value, actor_user_id)
        return len(self.known)

    def _upsert(self, conn, vulnerability_id: str, level: Level, actor_user_id: int | None) -> None:
        values = {"level": level.value, "updated_by": actor_user_id, "updated_at": now_iso()}
        result = conn.execute(
            _security_levels.update().where(_security_levels.c.vulnerability_id == vulnerability_id).values(**values)
        )
        if result.rowcount == 0:
            conn.execute(_security_levels.insert().values(vulnerability_id=vulnerability_id, **values))

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_setting(row, default: Level) -> SecurityLevelSetting:
    return SecurityLevelSetting(
        vulnerability_id=row.vulnerability_id,
        level=Level.parse(row.level) or default,
        updated_by=row.updated_by,
        updated_at=row.updated_at,
    )
