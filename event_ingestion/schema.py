"""
Relational layout of the replicated event store.

``SCHEMA_VERSION`` is the contract between the persister and the database:
a deployment whose recorded version is older than the version that
introduced an optional column is probed at runtime instead of trusted.
"""
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
    insert,
    select,
)
from sqlalchemy.engine import Connection, Engine

from event_ingestion.logging import log

SCHEMA_VERSION = 2

# version that introduced each optional indexed_events column
OPTIONAL_EVENT_COLUMNS = {
    "contract_name": 2,
    "transaction_status": 2,
}

NATURAL_KEY = ("block_number", "transaction_hash", "log_index", "event_kind")

metadata = MetaData()

indexed_events = Table(
    "indexed_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("block_number", BigInteger, nullable=False),
    Column("transaction_hash", String(66), nullable=False),
    Column("log_index", Integer, nullable=False),
    Column("event_kind", String(128), nullable=False),
    Column("contract_address", String(42), nullable=False),
    Column("payload", Text, nullable=False),
    Column("observed_at", DateTime(timezone=True), nullable=False),
    # optional (v2)
    Column("contract_name", String(128)),
    Column("transaction_status", String(16)),
    UniqueConstraint(*NATURAL_KEY, name="uq_indexed_events_natural_key"),
    Index("ix_indexed_events_kind_block", "event_kind", "block_number"),
)

checkpoints = Table(
    "indexer_checkpoint",
    metadata,
    Column("indexer_name", String(128), primary_key=True),
    Column("last_indexed_block", BigInteger, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

skipped_ranges = Table(
    "indexer_skipped_ranges",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("indexer_name", String(128), nullable=False),
    Column("from_block", BigInteger, nullable=False),
    Column("to_block", BigInteger, nullable=False),
    Column("reason", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("backfilled_at", DateTime(timezone=True)),
)

schema_version = Table(
    "indexer_schema_version",
    metadata,
    Column("version", Integer, primary_key=True),
    Column("applied_at", DateTime(timezone=True), nullable=False),
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_schema(engine: Engine):
    metadata.create_all(engine)
    with engine.begin() as conn:
        current = read_schema_version(conn)
        if current is None or current < SCHEMA_VERSION:
            conn.execute(
                insert(schema_version).values(version=SCHEMA_VERSION, applied_at=utcnow())
            )
            log.info(
                "schema_version_recorded",
                extra={"from_version": current, "to_version": SCHEMA_VERSION},
            )


def read_schema_version(conn: Connection) -> int | None:
    """Highest recorded version, or None when the table is absent or empty."""
    if not conn.dialect.has_table(conn, schema_version.name):
        return None
    return conn.execute(select(func.max(schema_version.c.version))).scalar()
