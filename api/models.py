from sqlalchemy import (
    JSON,
    TIMESTAMP,
    BigInteger,
    Column,
    Index,
    Integer,
    Text,
    func,
)
from sqlalchemy import text as sa_text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

Base = declarative_base()
metadata = Base.metadata

__all__ = ["Base", "metadata", "Event"]

# JSONB on Postgres, plain JSON elsewhere (SQLite in local runs and tests)
MetadataJSON = JSON().with_variant(JSONB(), "postgresql")

# BIGSERIAL on Postgres; SQLite only autoincrements INTEGER PRIMARY KEY
EventPK = BigInteger().with_variant(Integer(), "sqlite")


class Event(Base):
    __tablename__ = "events"

    id = Column(EventPK, primary_key=True, autoincrement=True)
    org_id = Column(Text, nullable=True)
    project_id = Column(Text, nullable=True)
    event_id = Column(Text, nullable=True)
    event_name = Column(Text, nullable=False)
    user_id = Column(Text, nullable=False)
    metadata_json = Column("metadata", MetadataJSON, nullable=False, default=dict)
    timestamp = Column(TIMESTAMP(timezone=True), nullable=False)
    event_hash = Column(Text, nullable=True)
    created_at = Column(
        TIMESTAMP(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        Index("idx_events_scope", "org_id", "project_id"),
        Index("idx_events_user_ts", "user_id", "timestamp"),
        Index("idx_events_name_ts", "event_name", "timestamp"),
        Index("idx_events_scope_ts", "org_id", "project_id", "timestamp"),
        Index(
            "idx_events_scope_user_name_ts",
            "org_id",
            "project_id",
            "user_id",
            "event_name",
            "timestamp",
        ),
    )


# Identity constraints. NULL scopes are folded to '' so that events without
# org/project still collide with each other (plain NULLs never conflict).
Index(
    "uniq_events_scope_event_id",
    func.coalesce(Event.org_id, ""),
    func.coalesce(Event.project_id, ""),
    Event.event_id,
    unique=True,
    postgresql_where=sa_text("event_id IS NOT NULL"),
    sqlite_where=sa_text("event_id IS NOT NULL"),
)
Index(
    "uniq_events_scope_event_hash",
    func.coalesce(Event.org_id, ""),
    func.coalesce(Event.project_id, ""),
    Event.event_hash,
    unique=True,
    postgresql_where=sa_text("event_hash IS NOT NULL"),
    sqlite_where=sa_text("event_hash IS NOT NULL"),
)
