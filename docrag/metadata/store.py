from __future__ import annotations

"""Run ledger for indexing jobs."""

import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse, urlunparse

from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, Text, create_engine, select
from sqlalchemy.exc import SQLAlchemyError


class MetadataStoreError(RuntimeError):
    """Raised when metadata persistence fails."""
    pass


@dataclass(frozen=True)
class IndexRunMeta:
    """Metadata tracked for a single indexing run."""
    source: str
    status: str = "running"
    chunk_count: int | None = None
    extra: dict[str, Any] | None = None


@dataclass(frozen=True)
class IndexRun:
    """Stored indexing run."""
    run_id: str
    source: str
    status: str
    chunk_count: int | None
    inserted: int | None
    updated: int | None
    skipped: int | None
    failed: int | None
    error: str | None
    created_at: datetime
    completed_at: datetime | None


class IndexRunStore:
    """Store indexing run metadata in a SQL database."""
    def __init__(self, connection_uri: str) -> None:
        """Initialize the run store and ensure tables exist."""
        self._engine = create_engine(connection_uri)
        self._metadata = MetaData()
        self._table = Table(
            "index_runs",
            self._metadata,
            Column("id", String(36), primary_key=True),
            Column("source", Text, nullable=False),
            Column("status", String(32), nullable=False),
            Column("chunk_count", Integer, nullable=True),
            Column("inserted", Integer, nullable=True),
            Column("updated", Integer, nullable=True),
            Column("skipped", Integer, nullable=True),
            Column("failed", Integer, nullable=True),
            Column("error", Text, nullable=True),
            Column("extra", Text, nullable=True),
            Column("created_at", DateTime(timezone=True), nullable=False),
            Column("completed_at", DateTime(timezone=True), nullable=True),
        )
        try:
            self._metadata.create_all(self._engine)
        except SQLAlchemyError as exc:
            raise MetadataStoreError(str(exc)) from exc

    def record_start(self, meta: IndexRunMeta) -> str:
        """Create a new run record and return its ID."""
        record_id = str(uuid.uuid4())
        extra = None
        if meta.extra:
            extra = json.dumps(meta.extra, ensure_ascii=True, default=str)
        payload = {
            "id": record_id,
            "source": self.redact_uri(meta.source),
            "status": meta.status,
            "chunk_count": meta.chunk_count,
            "extra": extra,
            "created_at": datetime.now(timezone.utc),
            "completed_at": None,
        }
        self._execute(self._table.insert().values(**payload))
        return record_id

    def record_complete(
        self,
        record_id: str,
        inserted: int,
        updated: int,
        skipped: int,
        failed: int,
    ) -> None:
        """Mark a run as completed with counts; partial when batches failed."""
        status = "completed" if failed == 0 else "partial"
        self._execute(
            self._table.update()
            .where(self._table.c.id == record_id)
            .values(
                status=status,
                inserted=inserted,
                updated=updated,
                skipped=skipped,
                failed=failed,
                completed_at=datetime.now(timezone.utc),
            )
        )

    def record_failure(self, record_id: str, error: str) -> None:
        """Mark a run as failed with an error message."""
        self._execute(
            self._table.update()
            .where(self._table.c.id == record_id)
            .values(status="failed", error=error, completed_at=datetime.now(timezone.utc))
        )

    def get_run(self, record_id: str) -> IndexRun | None:
        try:
            with self._engine.connect() as conn:
                row = conn.execute(
                    select(self._table).where(self._table.c.id == record_id)
                ).mappings().first()
        except SQLAlchemyError as exc:
            raise MetadataStoreError(str(exc)) from exc
        if row is None:
            return None
        return IndexRun(
            run_id=row["id"],
            source=row["source"],
            status=row["status"],
            chunk_count=row["chunk_count"],
            inserted=row["inserted"],
            updated=row["updated"],
            skipped=row["skipped"],
            failed=row["failed"],
            error=row["error"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )

    def _execute(self, statement: Any) -> None:
        try:
            with self._engine.begin() as conn:
                conn.execute(statement)
        except SQLAlchemyError as exc:
            raise MetadataStoreError(str(exc)) from exc

    @staticmethod
    def redact_uri(uri: str) -> str:
        """Redact credentials from connection URIs before storage."""
        if "://" not in uri:
            return uri
        parsed = urlparse(uri)
        if parsed.password is None:
            return uri
        netloc = parsed.hostname or ""
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        return urlunparse(
            (
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            )
        )
