"""
Event persistence.

`EventStore` owns every SQL statement this service issues: the conditional
insert used by both write paths, and the indexed reads behind the
aggregation engine. Postgres is the production target; SQLite works for
local runs and tests through the same statements.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import and_, distinct, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError

from api.core.metrics_store import log_json, timeit
from api.errors import PersistenceError
from api.models import Base, Event
from api.normalize.events import EventRecord, to_utc

_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


def is_connection_error(exc: BaseException) -> bool:
    """True for failures that mean the database itself is unreachable."""
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, OperationalError)


class EventStore:
    def __init__(self, engine: Engine):
        self.engine = engine
        dialect = engine.dialect.name
        if dialect not in _INSERTS:
            raise ValueError(f"unsupported database dialect: {dialect}")
        self._insert = _INSERTS[dialect]
        self.dialect = dialect

    def create_schema(self) -> None:
        """Create tables and indexes (local runs/tests; production uses Alembic)."""
        Base.metadata.create_all(self.engine)

    # -- writes ---------------------------------------------------------

    def _insert_stmt(self, record: EventRecord):
        stmt = self._insert(Event).values(
            org_id=record.org_id,
            project_id=record.project_id,
            event_id=record.event_id,
            event_name=record.event_name,
            user_id=record.user_id,
            metadata_json=record.metadata or {},
            timestamp=to_utc(record.timestamp),
            event_hash=None if record.event_id else record.event_hash,
            created_at=to_utc(record.created_at),
        )
        # Insert-if-absent: a row with the same scoped identity (either
        # unique index) turns this into a no-op, never an overwrite
        return stmt.on_conflict_do_nothing()

    def insert_if_absent(self, record: EventRecord) -> bool:
        """
        Conditionally insert one record in its own transaction.

        Returns:
            True when inserted, False when the identity already existed

        Raises:
            SQLAlchemyError: storage failure, left to the caller to isolate
        """
        with self.engine.begin() as conn:
            result = conn.execute(self._insert_stmt(record))
            return (result.rowcount or 0) > 0

    @timeit("store.insert_many", backend="sql")
    def insert_many_if_absent(self, records: Iterable[EventRecord]) -> Dict[str, Any]:
        """
        Per-record conditional inserts, each independent of the others.

        Returns:
            {"inserted": int, "duplicates": int, "failed": int,
             "connection_errors": int, "inserted_scopes": set of (org, project)}
        """
        stats = {
            "inserted": 0,
            "duplicates": 0,
            "failed": 0,
            "connection_errors": 0,
            "inserted_scopes": set(),
        }
        for record in records:
            try:
                if self.insert_if_absent(record):
                    stats["inserted"] += 1
                    stats["inserted_scopes"].add(record.scope)
                else:
                    stats["duplicates"] += 1
            except SQLAlchemyError as e:
                stats["failed"] += 1
                if is_connection_error(e):
                    stats["connection_errors"] += 1
                log_json(
                    stage="store.insert.error",
                    level="error",
                    org_id=record.org_id,
                    project_id=record.project_id,
                    event_id=record.event_id,
                    event_hash=record.event_hash,
                    error_type=type(e).__name__,
                    error=str(e)[:200],
                )
        return stats

    # -- reads ----------------------------------------------------------

    @staticmethod
    def _scope_filters(org_id: Optional[str], project_id: Optional[str]) -> List[Any]:
        filters = []
        if org_id:
            filters.append(Event.org_id == org_id)
        if project_id:
            filters.append(Event.project_id == project_id)
        return filters

    def _hour_label(self):
        """SQL expression for the UTC hour of `timestamp` as 'YYYY-MM-DD HH'."""
        if self.dialect == "postgresql":
            return func.to_char(func.timezone("UTC", Event.timestamp), "YYYY-MM-DD HH24")
        return func.strftime("%Y-%m-%d %H", Event.timestamp)

    def _fetch(self, stmt) -> List[Any]:
        try:
            with self.engine.connect() as conn:
                return list(conn.execute(stmt).all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"query failed: {type(e).__name__}") from e

    def hourly_counts(
        self,
        event_name: str,
        start: datetime,
        end: datetime,
        org_id: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> List[Tuple[str, int]]:
        """(hour label, count) for `event_name` with start <= timestamp <= end."""
        hour = self._hour_label().label("hour")
        stmt = (
            select(hour, func.count().label("n"))
            .where(
                Event.event_name == event_name,
                Event.timestamp >= to_utc(start),
                Event.timestamp <= to_utc(end),
                *self._scope_filters(org_id, project_id),
            )
            .group_by(hour)
            .order_by(hour)
        )
        return [(row.hour, int(row.n)) for row in self._fetch(stmt)]

    def first_occurrences(
        self,
        event_names: Sequence[str],
        start: datetime,
        end: datetime,
        org_id: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> List[Tuple[str, str, datetime]]:
        """(user_id, event_name, earliest timestamp) for each user/event pair in [start, end]."""
        first_ts = func.min(Event.timestamp).label("first_ts")
        stmt = (
            select(Event.user_id, Event.event_name, first_ts)
            .where(
                Event.event_name.in_(list(set(event_names))),
                Event.timestamp >= to_utc(start),
                Event.timestamp <= to_utc(end),
                *self._scope_filters(org_id, project_id),
            )
            .group_by(Event.user_id, Event.event_name)
        )
        rows = self._fetch(stmt)
        return [(row.user_id, row.event_name, self._as_datetime(row.first_ts)) for row in rows]

    def distinct_users(
        self,
        start: datetime,
        end: datetime,
        event_name: Optional[str] = None,
        org_id: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> Set[str]:
        """Distinct user ids with start <= timestamp < end, optionally for one event name."""
        conditions = [
            Event.timestamp >= to_utc(start),
            Event.timestamp < to_utc(end),
            *self._scope_filters(org_id, project_id),
        ]
        if event_name is not None:
            conditions.append(Event.event_name == event_name)
        stmt = select(distinct(Event.user_id)).where(and_(*conditions))
        return {row[0] for row in self._fetch(stmt)}

    def cohort_subquery(
        self,
        event_name: str,
        start: datetime,
        end: datetime,
        org_id: Optional[str] = None,
        project_id: Optional[str] = None,
    ):
        """SELECT of the users who did `event_name` in [start, end)."""
        return select(Event.user_id).where(
            Event.event_name == event_name,
            Event.timestamp >= to_utc(start),
            Event.timestamp < to_utc(end),
            *self._scope_filters(org_id, project_id),
        )

    def count_distinct_users(
        self,
        start: datetime,
        end: datetime,
        among,
        org_id: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> int:
        """Distinct users from `among` with any event in [start, end)."""
        stmt = select(func.count(distinct(Event.user_id))).where(
            Event.timestamp >= to_utc(start),
            Event.timestamp < to_utc(end),
            Event.user_id.in_(among),
            *self._scope_filters(org_id, project_id),
        )
        rows = self._fetch(stmt)
        return int(rows[0][0]) if rows else 0

    def user_events(
        self,
        user_id: str,
        org_id: Optional[str] = None,
        project_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[EventRecord]:
        """A user's events ascending by timestamp (ties by insertion order)."""
        conditions = [Event.user_id == user_id, *self._scope_filters(org_id, project_id)]
        if start is not None:
            conditions.append(Event.timestamp >= to_utc(start))
        if end is not None:
            conditions.append(Event.timestamp <= to_utc(end))
        stmt = (
            select(
                Event.org_id,
                Event.project_id,
                Event.event_id,
                Event.event_name,
                Event.user_id,
                Event.metadata_json.label("metadata"),
                Event.timestamp,
                Event.event_hash,
                Event.created_at,
            )
            .where(*conditions)
            .order_by(Event.timestamp.asc(), Event.id.asc())
            .limit(limit)
        )
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"query failed: {type(e).__name__}") from e
        return [self._row_to_record(row) for row in rows]

    def count(self, org_id: Optional[str] = None, project_id: Optional[str] = None) -> int:
        stmt = select(func.count()).select_from(Event).where(
            *self._scope_filters(org_id, project_id)
        )
        return int(self._fetch(stmt)[0][0])

    @staticmethod
    def _as_datetime(value: Any) -> datetime:
        # SQLite hands back naive datetimes (or strings from aggregates)
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        return to_utc(value)

    @classmethod
    def _row_to_record(cls, row: Any) -> EventRecord:
        m = row._mapping
        return EventRecord(
            org_id=m["org_id"],
            project_id=m["project_id"],
            event_id=m["event_id"],
            event_name=m["event_name"],
            user_id=m["user_id"],
            metadata=m["metadata"] or {},
            timestamp=cls._as_datetime(m["timestamp"]),
            event_hash=m["event_hash"],
            created_at=cls._as_datetime(m["created_at"]),
        )
