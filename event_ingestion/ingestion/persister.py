import json
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import and_, func, insert, inspect, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from event_ingestion.ingestion.scanner import IndexedEvent
from event_ingestion.logging import log
from event_ingestion.metrics import MetricsContext
from event_ingestion.schema import (
    NATURAL_KEY,
    OPTIONAL_EVENT_COLUMNS,
    indexed_events,
    read_schema_version,
)
from event_ingestion.state import transaction
from event_ingestion.web3_utils import to_json_safe


class PersistenceError(Exception):
    pass


@dataclass(frozen=True)
class VerificationResult:
    exists: bool
    valid: bool
    error: Optional[str] = None
    event: Optional[dict] = None


def encode_payload(payload: dict) -> str:
    return json.dumps(to_json_safe(payload), sort_keys=True)


class EventPersister:
    """
    Generic writer for every event kind: one shared table keyed by
    event_kind, insert-or-ignore on the natural key.
    """

    def __init__(self, engine: Engine, *, metrics: MetricsContext):
        self.engine = engine
        self.metrics = metrics
        self._optional_columns: set[str] | None = None

    # -------------------------
    # schema drift
    # -------------------------
    def optional_columns(self, conn: Connection | None = None) -> set[str]:
        if self._optional_columns is None:
            with transaction(self.engine, conn) as c:
                self._optional_columns = self._detect_optional_columns(c)
        return self._optional_columns

    def refresh_columns(self):
        self._optional_columns = None

    def _detect_optional_columns(self, conn: Connection) -> set[str]:
        version = read_schema_version(conn) or 0
        trusted = {col for col, since in OPTIONAL_EVENT_COLUMNS.items() if version >= since}
        if len(trusted) == len(OPTIONAL_EVENT_COLUMNS):
            return trusted

        # older or unversioned deployment → ask the database
        present = {c["name"] for c in inspect(conn).get_columns(indexed_events.name)}
        found = trusted | (present & set(OPTIONAL_EVENT_COLUMNS))
        missing = sorted(set(OPTIONAL_EVENT_COLUMNS) - found)
        if missing:
            log.warning(
                "⚠️ optional_columns_missing",
                extra={"schema_version": version, "missing": missing},
            )
        return found

    # -------------------------
    # write path
    # -------------------------
    def persist(self, batch: Iterable[IndexedEvent], conn: Connection | None = None) -> int:
        """
        Insert the window's events; duplicates of the natural key are no-ops.
        Returns the number of rows actually written.
        """
        batch = list(batch)
        if not batch:
            return 0

        written = 0
        per_kind: dict[str, int] = {}
        try:
            with transaction(self.engine, conn) as c:
                columns = self.optional_columns(c)
                for event in batch:
                    if self._insert_one(c, self._row(event, columns)):
                        written += 1
                        per_kind[event.event_kind] = per_kind.get(event.event_kind, 0) + 1
        except SQLAlchemyError as e:
            raise PersistenceError(f"{type(e).__name__}: {e}") from e

        for kind, n in per_kind.items():
            self.metrics.events_persisted_inc(kind, n)
        log.debug(
            "events_persisted",
            extra={"offered": len(batch), "written": written, "duplicates": len(batch) - written},
        )
        return written

    def _row(self, event: IndexedEvent, columns: set[str]) -> dict:
        row = {
            "block_number": event.block_number,
            "transaction_hash": event.transaction_hash,
            "log_index": event.log_index,
            "event_kind": event.event_kind,
            "contract_address": event.contract_address,
            "payload": encode_payload(event.payload),
            "observed_at": event.observed_at,
        }
        if "contract_name" in columns:
            row["contract_name"] = event.contract_name
        if "transaction_status" in columns:
            row["transaction_status"] = event.transaction_status
        return row

    def _insert_one(self, conn: Connection, row: dict) -> bool:
        dialect = conn.dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(indexed_events).values(**row)
        elif dialect == "sqlite":
            stmt = sqlite.insert(indexed_events).values(**row)
        else:
            # single writer: an existence check inside the transaction is enough
            if self._exists(conn, tuple(row[k] for k in NATURAL_KEY)):
                return False
            conn.execute(insert(indexed_events).values(**row))
            return True

        stmt = stmt.on_conflict_do_nothing(index_elements=list(NATURAL_KEY))
        return conn.execute(stmt).rowcount == 1

    # -------------------------
    # read path
    # -------------------------
    def _key_clause(self, natural_key: tuple):
        return and_(*(indexed_events.c[col] == value for col, value in zip(NATURAL_KEY, natural_key)))

    def _exists(self, conn: Connection, natural_key: tuple) -> bool:
        return conn.execute(
            select(indexed_events.c.id).where(self._key_clause(natural_key))
        ).first() is not None

    def verify(self, natural_key: tuple, expected_payload: dict | None = None) -> VerificationResult:
        """Re-read a stored row and check its payload survives a JSON round trip."""
        with self.engine.connect() as c:
            row = c.execute(
                select(indexed_events).where(self._key_clause(natural_key))
            ).mappings().first()

        if row is None:
            return VerificationResult(exists=False, valid=False, error="not found")

        event = dict(row)
        try:
            decoded = json.loads(row["payload"])
        except (TypeError, ValueError) as e:
            return VerificationResult(exists=True, valid=False, error=f"payload not JSON: {e}", event=event)

        event["payload"] = decoded
        if json.dumps(decoded, sort_keys=True) != row["payload"]:
            return VerificationResult(exists=True, valid=False, error="payload does not round-trip", event=event)
        if expected_payload is not None and decoded != to_json_safe(expected_payload):
            return VerificationResult(exists=True, valid=False, error="payload mismatch", event=event)
        return VerificationResult(exists=True, valid=True, event=event)

    def count(self, event_kind: str | None = None) -> int:
        query = select(func.count()).select_from(indexed_events)
        if event_kind is not None:
            query = query.where(indexed_events.c.event_kind == event_kind)
        with self.engine.connect() as c:
            return int(c.execute(query).scalar() or 0)
