from __future__ import annotations

"""Token usage ledger with versioned metadata."""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, Text, create_engine, select
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

USAGE_METADATA_VERSION = 1


class UsageStoreError(RuntimeError):
    """Raised when usage persistence fails."""
    pass


@dataclass(frozen=True)
class UsageMetadata:
    """Typed metadata attached to a usage entry.

    ``version`` 0 marks entries recovered from legacy or malformed blobs.
    """
    version: int = USAGE_METADATA_VERSION
    chunk_ids: tuple[str, ...] = ()
    batch_index: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "chunk_ids": list(self.chunk_ids),
            "batch_index": self.batch_index,
            "extra": dict(self.extra),
        }


@dataclass(frozen=True)
class TokenUsage:
    """One billed provider call."""
    operation: str
    model: str
    tokens: int
    metadata: UsageMetadata = field(default_factory=UsageMetadata)
    created_at: datetime | None = None


def _string_ids(value: Any) -> tuple[str, ...] | None:
    if not isinstance(value, list):
        return None
    if not all(isinstance(item, str) for item in value):
        return None
    return tuple(value)


def parse_usage_metadata(raw: str | dict[str, Any] | None) -> UsageMetadata:
    """Parse stored usage metadata.

    - versioned dict: validated into ``UsageMetadata``; unknown keys land in
      ``extra``.
    - legacy dict (no ``version``) with ``chunkIds`` or ``chunk_ids``: version
      0 with the chunk ids and any other keys as ``extra``.
    - anything else (invalid JSON, wrong types): empty version 0 carrying the
      raw value under ``extra["raw"]``.
    """
    if raw is None:
        return UsageMetadata(version=0)
    data: Any = raw
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return UsageMetadata(version=0, extra={"raw": raw})
    if not isinstance(data, dict):
        return UsageMetadata(version=0, extra={"raw": raw})

    version = data.get("version")
    if isinstance(version, int) and not isinstance(version, bool):
        chunk_ids = _string_ids(data.get("chunk_ids", []))
        batch_index = data.get("batch_index")
        extra = data.get("extra", {})
        if (
            chunk_ids is None
            or not isinstance(extra, dict)
            or (batch_index is not None and not isinstance(batch_index, int))
        ):
            return UsageMetadata(version=0, extra={"raw": raw})
        known = {"version", "chunk_ids", "batch_index", "extra"}
        merged = dict(extra)
        merged.update({key: value for key, value in data.items() if key not in known})
        return UsageMetadata(
            version=version,
            chunk_ids=chunk_ids,
            batch_index=batch_index,
            extra=merged,
        )

    legacy_ids = data.get("chunkIds", data.get("chunk_ids"))
    if legacy_ids is not None:
        chunk_ids = _string_ids(legacy_ids)
        if chunk_ids is None:
            return UsageMetadata(version=0, extra={"raw": raw})
        extra = {
            key: value
            for key, value in data.items()
            if key not in {"chunkIds", "chunk_ids"}
        }
        return UsageMetadata(version=0, chunk_ids=chunk_ids, extra=extra)
    return UsageMetadata(version=0, extra={"raw": raw})


class TokenUsageStore:
    """Persist token usage rows to a SQL database."""
    def __init__(self, connection_uri: str) -> None:
        """Initialize the usage store and ensure tables exist."""
        self._engine = create_engine(connection_uri)
        self._metadata = MetaData()
        self._table = Table(
            "token_usage",
            self._metadata,
            Column("id", String(36), primary_key=True),
            Column("operation", String(32), nullable=False),
            Column("model", String(128), nullable=False),
            Column("tokens", Integer, nullable=False),
            Column("metadata", Text, nullable=True),
            Column("created_at", DateTime(timezone=True), nullable=False),
        )
        try:
            self._metadata.create_all(self._engine)
        except SQLAlchemyError as exc:
            raise UsageStoreError(str(exc)) from exc

    def record(self, usage: TokenUsage) -> str:
        """Insert a usage row and return its ID."""
        record_id = str(uuid.uuid4())
        payload = {
            "id": record_id,
            "operation": usage.operation,
            "model": usage.model,
            "tokens": usage.tokens,
            "metadata": json.dumps(usage.metadata.to_dict(), ensure_ascii=True, default=str),
            "created_at": usage.created_at or datetime.now(timezone.utc),
        }
        try:
            with self._engine.begin() as conn:
                conn.execute(self._table.insert().values(**payload))
        except SQLAlchemyError as exc:
            raise UsageStoreError(str(exc)) from exc
        return record_id

    def list_usage(self, operation: str | None = None) -> list[TokenUsage]:
        """Return usage rows oldest first, optionally filtered by operation."""
        query = select(self._table).order_by(self._table.c.created_at)
        if operation:
            query = query.where(self._table.c.operation == operation)
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(query).mappings().all()
        except SQLAlchemyError as exc:
            raise UsageStoreError(str(exc)) from exc
        return [
            TokenUsage(
                operation=row["operation"],
                model=row["model"],
                tokens=row["tokens"],
                metadata=parse_usage_metadata(row["metadata"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def total_tokens(self, operation: str | None = None) -> int:
        return sum(entry.tokens for entry in self.list_usage(operation))
