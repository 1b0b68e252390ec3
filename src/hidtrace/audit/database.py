"""
Incident Store.

Append-only SQLite persistence for emitted incidents, with querying for
the CLI and an integrity hash over the stored log.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Generator

from sqlalchemy import create_engine, func, text
from sqlalchemy.orm import Session, sessionmaker

from hidtrace.audit.models import (
    APPEND_ONLY_TRIGGER,
    Base,
    IncidentRecord,
    split_statements,
    to_db_time,
)
from hidtrace.core.correlator import Incident
from hidtrace.interceptor.events import scored_descriptor


logger = logging.getLogger(__name__)


class IncidentStore:
    """
    High-level interface for incident persistence.

    Records are written once and never modified; the database enforces
    this with triggers.
    """

    def __init__(
        self,
        db_path: str | Path,
        wal_mode: bool = True,
        create_if_missing: bool = True,
        run_id: str | None = None,
    ) -> None:
        """
        Initialize the incident store.

        Args:
            db_path: Path to SQLite database file (":memory:" for tests)
            wal_mode: Enable WAL mode for better concurrency
            create_if_missing: Create database if it doesn't exist
            run_id: Label for incidents recorded through this store
                (sequence numbers restart with every engine run)
        """
        self.run_id = run_id or uuid.uuid4().hex
        in_memory = str(db_path) == ":memory:"
        self.db_path = Path(db_path) if not in_memory else None

        # Ensure parent directory exists
        if self.db_path is not None and create_if_missing:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        if in_memory:
            from sqlalchemy.pool import StaticPool

            self.engine = create_engine(
                "sqlite://",
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(
                f"sqlite:///{self.db_path}",
                echo=False,
                pool_pre_ping=True,
                connect_args={"check_same_thread": False},
            )

        # Create session factory
        self.Session = sessionmaker(bind=self.engine)

        if create_if_missing:
            self._init_schema()

        # Enable WAL mode
        if wal_mode and not in_memory:
            with self.engine.connect() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.commit()

    def _init_schema(self) -> None:
        """Initialize database schema and triggers."""
        Base.metadata.create_all(self.engine)

        with self.engine.begin() as conn:
            for statement in split_statements(APPEND_ONLY_TRIGGER):
                conn.execute(text(statement))

        logger.info("Incident store initialized: %s", self.db_path or ":memory:")

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Get a database session context manager.

        Yields:
            SQLAlchemy Session object
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def record(self, incident: Incident) -> int:
        """
        Persist an incident.

        Args:
            incident: Emitted incident

        Returns:
            Row id of the stored record
        """
        descriptor = scored_descriptor(incident.event)
        record = IncidentRecord(
            run_id=self.run_id,
            sequence=incident.sequence,
            event_kind=incident.event.kind.value,
            bus=incident.identity.bus,
            address=incident.identity.address,
            vid=descriptor.vid if descriptor else None,
            pid=descriptor.pid if descriptor else None,
            device_class=descriptor.device_class if descriptor else None,
            trigger_timestamp=to_db_time(incident.window_start),
            window_end=to_db_time(incident.window_end),
            closed_at=to_db_time(incident.closed_at),
            close_reason=incident.close_reason.value,
            confidence=incident.confidence,
            anomaly_score=incident.anomaly.score,
            match_count=len(incident.matches),
            alert=incident.alert,
            cut_short=incident.cut_short,
            degraded=incident.degraded,
            payload=incident.to_json(),
        )
        with self.session() as session:
            session.add(record)
            session.flush()
            record_id = record.id

        logger.debug("Stored incident #%d as record %d", incident.sequence, record_id)
        return record_id

    def get_incident(self, record_id: int) -> IncidentRecord | None:
        """
        Get a stored incident by record id.

        Returns:
            IncidentRecord or None if not found
        """
        with self.session() as session:
            record = session.get(IncidentRecord, record_id)
            if record:
                session.expunge(record)
            return record

    def _filtered(
        self,
        session: Session,
        since: datetime | None = None,
        until: datetime | None = None,
        alerts_only: bool = False,
        run_id: str | None = None,
    ) -> Any:
        query = session.query(IncidentRecord)
        if since:
            query = query.filter(IncidentRecord.trigger_timestamp >= to_db_time(since))
        if until:
            query = query.filter(IncidentRecord.trigger_timestamp <= to_db_time(until))
        if alerts_only:
            query = query.filter(IncidentRecord.alert.is_(True))
        if run_id:
            query = query.filter(IncidentRecord.run_id == run_id)
        return query

    def list_incidents(
        self,
        since: datetime | None = None,
        until: datetime | None = None,
        alerts_only: bool = False,
        run_id: str | None = None,
        limit: int | None = 50,
        offset: int = 0,
    ) -> tuple[list[IncidentRecord], int]:
        """
        List incidents with filters and pagination.

        Newest trigger first; sequence breaks ties so incidents of one run
        keep their emission order.

        Args:
            since: Incidents triggered at or after this time
            until: Incidents triggered at or before this time
            alerts_only: Only incidents above the alert threshold
            run_id: Only incidents from one engine run
            limit: Maximum results
            offset: Skip results

        Returns:
            Tuple of (records, total matching count)
        """
        with self.session() as session:
            query = self._filtered(session, since, until, alerts_only, run_id)
            total = query.count()

            query = query.order_by(
                IncidentRecord.trigger_timestamp.desc(),
                IncidentRecord.sequence.desc(),
            )
            if offset:
                query = query.offset(offset)
            if limit:
                query = query.limit(limit)

            records = query.all()
            for r in records:
                session.expunge(r)
            return records, total

    def count(self, alerts_only: bool = False) -> int:
        """Count stored incidents."""
        with self.session() as session:
            query = session.query(func.count(IncidentRecord.id))
            if alerts_only:
                query = query.filter(IncidentRecord.alert.is_(True))
            return query.scalar() or 0

    def compute_integrity_hash(self) -> str:
        """
        Compute a hash over every stored incident in insertion order.

        Returns:
            SHA-256 hex digest
        """
        with self.session() as session:
            rows = (
                session.query(IncidentRecord.id, IncidentRecord.run_id, IncidentRecord.payload)
                .order_by(IncidentRecord.id)
                .all()
            )
            hasher = hashlib.sha256()
            for row in rows:
                hasher.update(f"{row.id}|{row.run_id}|{row.payload}".encode())
            return hasher.hexdigest()

    def verify_integrity(self, expected_hash: str | None = None) -> bool:
        """
        Verify database integrity.

        Args:
            expected_hash: Expected hash (if known)

        Returns:
            True if integrity check passes
        """
        with self.engine.connect() as conn:
            result = conn.execute(text("PRAGMA integrity_check")).fetchone()
            if result[0] != "ok":
                logger.error("SQLite integrity check failed: %s", result[0])
                return False

        if expected_hash:
            current_hash = self.compute_integrity_hash()
            if current_hash != expected_hash:
                logger.error("Incident hash mismatch")
                return False

        return True

    def close(self) -> None:
        """Close database connections."""
        self.engine.dispose()
