"""
Bulk persistence of mapped records with duplicate resolution.

Records are written in bounded sub-batches; each sub-batch is one
transaction. A failing sub-batch is counted as failed as a whole and the
remaining sub-batches are still written.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import bindparam, or_, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from feedflow.core.config import settings
from feedflow.core.exceptions import PersistenceError
from feedflow.db.models import metadata
from feedflow.domain.imports.relationships import PRODUCT_REF_COLUMN
from feedflow.utils.locks import TableLockManager

logger = logging.getLogger(__name__)


class DuplicateStrategy(str, Enum):
    SKIP = "SKIP"
    OVERRIDE = "OVERRIDE"
    IGNORE = "IGNORE"


@dataclass
class BatchResult:
    """Counters for one or more batch writes plus a bounded sample of error messages."""
    entity_type: str
    saved: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    error_count: int = 0
    # External key -> database id for every key seen (inserted, updated or skipped).
    key_ids: Dict[str, int] = field(default_factory=dict)
    # Keys skipped because a row written by another operation already holds them.
    skipped_keys: Set[str] = field(default_factory=set)
    # Related rows of updated records removed before their replacements are written.
    replaced_related: int = 0

    @property
    def total(self) -> int:
        return self.saved + self.updated + self.skipped + self.failed

    @property
    def has_errors(self) -> bool:
        return self.error_count > 0

    def add_error(self, message: str) -> None:
        self.error_count += 1
        if len(self.errors) < settings.batch_error_sample_limit:
            self.errors.append(message)

    def merge(self, other: "BatchResult") -> "BatchResult":
        self.saved += other.saved
        self.updated += other.updated
        self.skipped += other.skipped
        self.failed += other.failed
        for message in other.errors:
            if len(self.errors) >= settings.batch_error_sample_limit:
                break
            self.errors.append(message)
        self.error_count += other.error_count
        self.key_ids.update(other.key_ids)
        self.skipped_keys.update(other.skipped_keys)
        self.replaced_related += other.replaced_related
        return self

    def as_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "saved": self.saved,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "total": self.total,
            "errors": list(self.errors),
            "error_count": self.error_count,
        }


def _key_of(record, key_field: Optional[str]) -> Optional[str]:
    if key_field is None:
        return None
    value = record.values.get(key_field)
    if value is None:
        return None
    key = str(value).strip()
    return key or None


class BatchPersistenceEngine:
    """
    Writes MappedRecords of one schema to its table.

    Args:
        engine: SQLAlchemy engine.
        batch_size: Maximum rows per statement/transaction.
        client_id: Owner of the rows; part of the duplicate key.
        file_operation_id: Operation that produced the rows.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        batch_size: Optional[int] = None,
        client_id: Optional[int] = None,
        file_operation_id: Optional[str] = None,
    ):
        self.engine = engine
        self.batch_size = max(1, batch_size or settings.import_batch_size)
        self.client_id = client_id
        self.file_operation_id = file_operation_id

    def save_batch(
        self,
        records: Sequence,
        schema,
        strategy: DuplicateStrategy,
        *,
        replace_related=None,
    ) -> BatchResult:
        """
        Persist ``records`` using ``strategy``; never raises for write failures.

        ``replace_related`` names a schema whose rows point at this one through
        ``product_ref``. Under OVERRIDE, rows of that schema referencing an
        updated record and written by another operation are deleted in the
        transaction that performs the update.
        """
        result = BatchResult(entity_type=schema.entity_type)
        if not records:
            return result

        strategy = DuplicateStrategy(strategy)
        key_field = schema.key_fields[0] if schema.key_fields else None
        if key_field is None and strategy is not DuplicateStrategy.IGNORE:
            logger.debug("%s has no unique key; %s behaves as IGNORE", schema.entity_type, strategy.value)
            strategy = DuplicateStrategy.IGNORE

        for start in range(0, len(records), self.batch_size):
            chunk = records[start:start + self.batch_size]
            try:
                with TableLockManager.acquire(schema.table):
                    chunk_result = self._save_chunk(chunk, schema, strategy, key_field, replace_related)
            except PersistenceError as exc:
                chunk_result = BatchResult(entity_type=schema.entity_type, failed=len(chunk))
                chunk_result.add_error(exc.message)
            result.merge(chunk_result)

        logger.info(
            "Saved %s batch (%s): saved=%d updated=%d skipped=%d failed=%d",
            schema.entity_type,
            strategy.value,
            result.saved,
            result.updated,
            result.skipped,
            result.failed,
        )
        return result

    # -- internals ---------------------------------------------------------------

    def _save_chunk(
        self,
        records: Sequence,
        schema,
        strategy: DuplicateStrategy,
        key_field: Optional[str],
        replace_related=None,
    ) -> BatchResult:
        result = BatchResult(entity_type=schema.entity_type)
        try:
            with self.engine.begin() as conn:
                if strategy is DuplicateStrategy.IGNORE:
                    self._insert_rows(conn, schema, records)
                    result.saved = len(records)
                elif strategy is DuplicateStrategy.SKIP:
                    self._save_with_skip(conn, schema, records, key_field, result)
                else:
                    self._save_with_override(conn, schema, records, key_field, result, replace_related)

                if key_field is not None:
                    keys = {_key_of(record, key_field) for record in records}
                    keys.discard(None)
                    result.key_ids.update(self._fetch_existing_ids(conn, schema, key_field, keys))
        except SQLAlchemyError as exc:
            logger.error("Batch save failed for %d %s records: %s", len(records), schema.entity_type, exc)
            raise PersistenceError(
                schema.entity_type,
                len(records),
                f"Batch save failed: {exc.__class__.__name__}: {str(exc).splitlines()[0]}",
            ) from exc
        return result

    def _save_with_skip(self, conn: Connection, schema, records: Sequence, key_field: str, result: BatchResult) -> None:
        keys = {_key_of(record, key_field) for record in records}
        keys.discard(None)
        existing = self._fetch_existing_rows(conn, schema, key_field, keys)

        to_insert = []
        seen = set()
        for record in records:
            key = _key_of(record, key_field)
            if key is not None and (key in existing or key in seen):
                result.skipped += 1
                if key in existing and not self._written_here(existing[key][1]):
                    result.skipped_keys.add(key)
                logger.debug("Skipping duplicate %s '%s'", schema.entity_type, key)
                continue
            if key is not None:
                seen.add(key)
            to_insert.append(record)

        self._insert_rows(conn, schema, to_insert)
        result.saved += len(to_insert)

    def _save_with_override(
        self,
        conn: Connection,
        schema,
        records: Sequence,
        key_field: str,
        result: BatchResult,
        replace_related=None,
    ) -> None:
        keys = {_key_of(record, key_field) for record in records}
        keys.discard(None)
        existing = self._fetch_existing_ids(conn, schema, key_field, keys)

        # Later rows with the same key replace earlier ones.
        latest_by_key: Dict[str, Any] = {}
        keyless = []
        for record in records:
            key = _key_of(record, key_field)
            if key is None:
                keyless.append(record)
            else:
                latest_by_key[key] = record

        to_insert = keyless + [record for key, record in latest_by_key.items() if key not in existing]
        to_update = [(existing[key], record) for key, record in latest_by_key.items() if key in existing]

        self._insert_rows(conn, schema, to_insert)
        if replace_related is not None and to_update:
            result.replaced_related += self._delete_related(conn, replace_related, [row_id for row_id, _ in to_update])
        self._update_rows(conn, schema, to_update)
        result.saved += len(to_insert)
        result.updated += len(to_update)

    def _row_values(self, schema, record) -> Dict[str, Any]:
        row = {spec.column: record.values.get(spec.name) for spec in schema.fields}
        row["client_id"] = self.client_id
        row["file_operation_id"] = self.file_operation_id
        row.update(record.links)
        return row

    def _insert_rows(self, conn: Connection, schema, records: Iterable) -> None:
        rows = [self._row_values(schema, record) for record in records]
        if not rows:
            return
        # executemany needs the same keys in every parameter set
        columns = set().union(*rows)
        rows = [{column: row.get(column) for column in columns} for row in rows]
        table = metadata.tables[schema.table]
        conn.execute(table.insert(), rows)

    def _update_rows(self, conn: Connection, schema, updates: List[Tuple[int, Any]]) -> None:
        if not updates:
            return
        table = metadata.tables[schema.table]
        now = datetime.now()
        rows = []
        for row_id, record in updates:
            row = self._row_values(schema, record)
            row["row_id"] = row_id
            if "updated_at" in table.c:
                row["updated_at"] = now
            rows.append(row)
        statement = table.update().where(table.c.id == bindparam("row_id"))
        conn.execute(statement, rows)

    def _written_here(self, file_operation_id: Optional[str]) -> bool:
        return self.file_operation_id is not None and file_operation_id == self.file_operation_id

    def _delete_related(self, conn: Connection, related_schema, parent_ids: List[int]) -> int:
        table = metadata.tables[related_schema.table]
        statement = table.delete().where(table.c[PRODUCT_REF_COLUMN].in_(parent_ids))
        if self.file_operation_id is not None:
            statement = statement.where(
                or_(table.c.file_operation_id.is_(None), table.c.file_operation_id != self.file_operation_id)
            )
        deleted = conn.execute(statement).rowcount or 0
        if deleted:
            logger.debug("Removed %d %s rows of %d updated records", deleted, related_schema.entity_type, len(parent_ids))
        return deleted

    def _fetch_existing_ids(self, conn: Connection, schema, key_field: str, keys: Iterable[str]) -> Dict[str, int]:
        return {key: row_id for key, (row_id, _) in self._fetch_existing_rows(conn, schema, key_field, keys).items()}

    def _fetch_existing_rows(
        self, conn: Connection, schema, key_field: str, keys: Iterable[str]
    ) -> Dict[str, Tuple[int, Optional[str]]]:
        """External key -> (row id, id of the operation that wrote the row)."""
        keys = list(keys)
        if not keys:
            return {}
        key_column = schema.column_for(key_field)
        client_clause = "client_id = :client_id" if self.client_id is not None else "client_id IS NULL"
        lookup_sql = text(
            f'SELECT id, "{key_column}" AS key_value, file_operation_id FROM "{schema.table}" '
            f'WHERE {client_clause} AND "{key_column}" IN :keys ORDER BY id'
        ).bindparams(bindparam("keys", expanding=True))

        existing: Dict[str, Tuple[int, Optional[str]]] = {}
        for start in range(0, len(keys), self.batch_size):
            params = {"keys": keys[start:start + self.batch_size]}
            if self.client_id is not None:
                params["client_id"] = self.client_id
            for row in conn.execute(lookup_sql, params).mappings():
                # First stored row wins when the table already holds duplicates.
                existing.setdefault(row["key_value"], (row["id"], row["file_operation_id"]))
        return existing
