"""Versioned local database for offline-first state.

This module provides:
- TableSchema / SchemaVersion: Declarative schema, one entry per version
- PersistentStore: SQLite-backed indexed record store

Architecture:
    Records are plain dicts stored as JSON in a ``data`` column. Primary key
    fields and indexed fields are copied into real columns so that lookups
    and ``where`` queries use SQLite indexes.

    Schema evolution is forward-only. ``PRAGMA user_version`` records the
    last applied version; opening the store applies every missing version in
    order inside one transaction each, adding tables, columns and indexes
    while keeping existing rows. A table declared by an earlier version stays
    active unless a later version redeclares it.

    Multi-table writes go through ``transaction()``, which runs a single
    ``BEGIN IMMEDIATE`` transaction: other writers wait for the commit and
    WAL mode keeps readers on other connections unblocked.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from offlinekit.core.errors import ConstraintError, PersistenceError, SchemaError

logger = logging.getLogger(__name__)

MEMORY = ":memory:"

# Fixed primary key of the journey singleton row
JOURNEY_ID = 1


@dataclass(frozen=True)
class TableSchema:
    """Declaration of one table.

    Attributes:
        name: Table name.
        key: Primary key fields. More than one field makes a compound key.
        indexes: Secondary indexed fields.
    """

    name: str
    key: tuple[str, ...]
    indexes: tuple[str, ...] = ()

    @property
    def compound(self) -> bool:
        """Whether the primary key spans several fields."""
        return len(self.key) > 1

    @property
    def columns(self) -> tuple[str, ...]:
        """Key fields followed by index fields, without duplicates."""
        return self.key + tuple(f for f in self.indexes if f not in self.key)


@dataclass(frozen=True)
class SchemaVersion:
    """Tables introduced or redeclared by one schema version."""

    version: int
    tables: tuple[TableSchema, ...]


SCHEMA_VERSIONS: tuple[SchemaVersion, ...] = (
    SchemaVersion(
        1,
        (
            TableSchema("journey", key=("id",), indexes=("pathId", "experienceLevel")),
            TableSchema(
                "bookmarks",
                key=("id",),
                indexes=("type", "title", "topicSlug", "categorySlug"),
            ),
            TableSchema(
                "progress",
                key=("topicSlug", "sectionSlug"),
                indexes=("topicSlug", "sectionSlug", "completedAt"),
            ),
        ),
    ),
    SchemaVersion(
        2,
        (TableSchema("offline_content", key=("slug",), indexes=("updatedAt",)),),
    ),
)


def _quote(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _column_value(value: Any) -> Any:
    """Convert a record field to something SQLite can index."""
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, sort_keys=True)
    return value


class PersistentStore:
    """SQLite-based indexed record store with forward-only migrations.

    Usage:
        store = PersistentStore(path)
        store.put("bookmarks", {"id": "b1", "type": "topic", "title": "Graphs"})
        store.get("bookmarks", "b1")

        with store.transaction("journey", "bookmarks"):
            store.put("journey", {...})
            store.bulk_put("bookmarks", [...])
    """

    def __init__(
        self,
        db_path: Path | str,
        versions: tuple[SchemaVersion, ...] = SCHEMA_VERSIONS,
    ) -> None:
        """Open (and upgrade) the store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            versions: Schema history, ordered by version.
        """
        if str(db_path) == MEMORY:
            self._db_path: Path | None = None
            target = MEMORY
        else:
            self._db_path = Path(db_path)
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            target = str(self._db_path)

        # Lock for thread-safe database access; held for a whole transaction
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._tx_tables: frozenset[str] = frozenset()
        self._writes = 0

        self._conn = sqlite3.connect(
            target,
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode, transactions are explicit
        )
        self._conn.row_factory = sqlite3.Row

        # Enable WAL mode for better concurrency
        if self._db_path is not None:
            self._conn.execute("PRAGMA journal_mode=WAL")

        self._tables: dict[str, TableSchema] = {}
        self._upgrade(versions)

    # === Schema ===

    def _upgrade(self, versions: tuple[SchemaVersion, ...]) -> None:
        """Apply every schema version newer than the stored one."""
        self._conn.execute(
            "CREATE TABLE IF NOT EXISTS _meta (key TEXT PRIMARY KEY, value TEXT)"
        )
        current = self._conn.execute("PRAGMA user_version").fetchone()[0]

        for version in sorted(versions, key=lambda v: v.version):
            for table in version.tables:
                self._tables[table.name] = table
            if version.version <= current:
                continue

            logger.info(f"Upgrading store schema from v{current} to v{version.version}")
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                for table in version.tables:
                    self._apply_table(table)
                # PRAGMA does not accept bound parameters
                self._conn.execute(f"PRAGMA user_version = {int(version.version)}")
                self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._conn.execute("ROLLBACK")
                raise PersistenceError(
                    f"Schema upgrade to v{version.version} failed: {e}"
                ) from e
            current = version.version

    def _apply_table(self, table: TableSchema) -> None:
        """Create a table or extend an existing one with new index columns."""
        name = _quote(table.name)
        existing = {
            row["name"]
            for row in self._conn.execute(f"PRAGMA table_info({name})").fetchall()
        }

        if not existing:
            cols = ", ".join(_quote(c) for c in table.columns)
            pk = ", ".join(_quote(c) for c in table.key)
            self._conn.execute(
                f"CREATE TABLE {name} ({cols}, data TEXT NOT NULL, PRIMARY KEY ({pk}))"
            )
        else:
            for column in table.columns:
                if column in existing:
                    continue
                self._conn.execute(f"ALTER TABLE {name} ADD COLUMN {_quote(column)}")
                # Backfill from the stored JSON so old rows are queryable
                self._conn.execute(
                    f"UPDATE {name} SET {_quote(column)} = json_extract(data, ?)",
                    (f'$."{column}"',),
                )

        for field in table.indexes:
            index = _quote(f"idx_{table.name}_{field}")
            self._conn.execute(
                f"CREATE INDEX IF NOT EXISTS {index} ON {name} ({_quote(field)})"
            )

    @property
    def version(self) -> int:
        """Schema version the store is at."""
        with self._lock:
            return int(self._conn.execute("PRAGMA user_version").fetchone()[0])

    @property
    def tables(self) -> tuple[str, ...]:
        """Names of the tables active at the current version."""
        return tuple(sorted(self._tables))

    @property
    def write_count(self) -> int:
        """Number of write operations issued through this instance."""
        return self._writes

    def schema(self, table: str) -> TableSchema:
        """Get the declaration of a table.

        Raises:
            SchemaError: If the table is not part of the schema.
        """
        try:
            return self._tables[table]
        except KeyError:
            raise SchemaError(f"Unknown table: {table}") from None

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def __enter__(self) -> PersistentStore:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    # === Transactions ===

    @contextmanager
    def transaction(self, *tables: str) -> Iterator[PersistentStore]:
        """Run the enclosed writes as one atomic unit.

        Nested calls join the outer transaction. Any exception rolls back
        every write made since the outermost ``transaction()`` began.

        Args:
            *tables: Tables the transaction may write. Empty means all tables.

        Raises:
            SchemaError: If a table is unknown, or a nested transaction asks
                for a table outside the outer scope.
            PersistenceError: If the transaction cannot begin or commit.
        """
        scope = frozenset(self.schema(t).name for t in tables) or frozenset(self._tables)

        with self._lock:
            if self._tx_depth:
                if not scope <= self._tx_tables:
                    raise SchemaError(
                        f"Tables {sorted(scope - self._tx_tables)} are outside the "
                        "enclosing transaction"
                    )
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return

            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise PersistenceError(f"Cannot begin transaction: {e}") from e

            self._tx_depth = 1
            self._tx_tables = scope
            try:
                yield self
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                try:
                    self._conn.execute("COMMIT")
                except sqlite3.Error as e:
                    self._conn.execute("ROLLBACK")
                    raise PersistenceError(f"Commit failed: {e}") from e
            finally:
                self._tx_depth = 0
                self._tx_tables = frozenset()

    def _check_writable(self, table: str) -> TableSchema:
        # Caller holds _lock
        schema = self.schema(table)
        if self._tx_depth and table not in self._tx_tables:
            raise SchemaError(f"Table {table} is not part of the current transaction")
        return schema

    # === Key helpers ===

    def _key_of(self, schema: TableSchema, record: dict[str, Any]) -> tuple[Any, ...]:
        try:
            return tuple(record[f] for f in schema.key)
        except KeyError as e:
            raise ValueError(
                f"Record for {schema.name} lacks key field {e.args[0]!r}"
            ) from None

    def _key_args(self, schema: TableSchema, key: Any) -> tuple[Any, ...]:
        if schema.compound:
            values = tuple(key)
            if len(values) != len(schema.key):
                raise ValueError(
                    f"Key for {schema.name} needs {len(schema.key)} parts, got {len(values)}"
                )
            return values
        return (key,)

    def _where_key(self, schema: TableSchema) -> str:
        return " AND ".join(f"{_quote(f)} = ?" for f in schema.key)

    # === Reads ===

    def get(self, table: str, key: Any) -> dict[str, Any] | None:
        """Get a record by primary key.

        Args:
            table: Table name.
            key: Key value, or a tuple/list for compound keys.

        Returns:
            The record, or None if absent.
        """
        schema = self.schema(table)
        with self._lock:
            row = self._conn.execute(
                f"SELECT data FROM {_quote(table)} WHERE {self._where_key(schema)}",
                self._key_args(schema, key),
            ).fetchone()
        return json.loads(row["data"]) if row else None

    def all(self, table: str) -> list[dict[str, Any]]:
        """List all records of a table in primary key order."""
        schema = self.schema(table)
        order = ", ".join(_quote(f) for f in schema.key)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT data FROM {_quote(table)} ORDER BY {order}"
            ).fetchall()
        return [json.loads(row["data"]) for row in rows]

    def where(self, table: str, field: str, value: Any) -> list[dict[str, Any]]:
        """List records whose indexed field equals a value.

        Raises:
            SchemaError: If the field is neither a key nor an index of the table.
        """
        schema = self.schema(table)
        if field not in schema.columns:
            raise SchemaError(f"{table}.{field} is not indexed")
        order = ", ".join(_quote(f) for f in schema.key)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT data FROM {_quote(table)} WHERE {_quote(field)} = ? "
                f"ORDER BY {order}",
                (_column_value(value),),
            ).fetchall()
        return [json.loads(row["data"]) for row in rows]

    def count(self, table: str) -> int:
        """Count the records of a table."""
        self.schema(table)
        with self._lock:
            row = self._conn.execute(f"SELECT COUNT(*) FROM {_quote(table)}").fetchone()
        return int(row[0])

    # === Writes ===

    def _write(self, sql: str, params: Iterable[Any]) -> sqlite3.Cursor:
        try:
            cursor = self._conn.execute(sql, tuple(params))
        except sqlite3.IntegrityError as e:
            raise ConstraintError(str(e)) from e
        except sqlite3.Error as e:
            raise PersistenceError(str(e)) from e
        self._writes += 1
        return cursor

    def _insert_sql(self, schema: TableSchema, verb: str) -> str:
        cols = schema.columns
        names = ", ".join(_quote(c) for c in cols)
        marks = ", ".join("?" for _ in cols)
        return f"{verb} INTO {_quote(schema.name)} ({names}, data) VALUES ({marks}, ?)"

    def _insert_params(self, schema: TableSchema, record: dict[str, Any]) -> list[Any]:
        self._key_of(schema, record)
        params = [_column_value(record.get(c)) for c in schema.columns]
        params.append(json.dumps(record))
        return params

    def put(self, table: str, record: dict[str, Any]) -> tuple[Any, ...]:
        """Insert or replace a record (atomic upsert).

        Returns:
            The primary key of the record.
        """
        with self._lock:
            schema = self._check_writable(table)
            params = self._insert_params(schema, record)
            self._write(self._insert_sql(schema, "INSERT OR REPLACE"), params)
        return self._key_of(schema, record)

    def add(self, table: str, record: dict[str, Any]) -> tuple[Any, ...]:
        """Insert a record that must not exist yet.

        Raises:
            ConstraintError: If a record with the same key exists.
        """
        with self._lock:
            schema = self._check_writable(table)
            params = self._insert_params(schema, record)
            self._write(self._insert_sql(schema, "INSERT"), params)
        return self._key_of(schema, record)

    def bulk_put(self, table: str, records: Iterable[dict[str, Any]]) -> int:
        """Upsert many records in one transaction.

        Returns:
            Number of records written.
        """
        written = 0
        with self.transaction(table):
            for record in records:
                self.put(table, record)
                written += 1
        return written

    def update(self, table: str, key: Any, changes: dict[str, Any]) -> int:
        """Merge changes into an existing record.

        Key fields in ``changes`` are ignored.

        Returns:
            1 if the record existed and was updated, 0 otherwise.
        """
        schema = self.schema(table)
        with self.transaction(table):
            existing = self.get(table, key)
            if existing is None:
                return 0
            merged = {**existing, **{k: v for k, v in changes.items() if k not in schema.key}}
            self.put(table, merged)
        return 1

    def delete(self, table: str, key: Any) -> None:
        """Delete a record by primary key (no-op if absent)."""
        with self._lock:
            schema = self._check_writable(table)
            self._write(
                f"DELETE FROM {_quote(table)} WHERE {self._where_key(schema)}",
                self._key_args(schema, key),
            )

    def clear(self, table: str) -> None:
        """Delete every record of a table."""
        with self._lock:
            self._check_writable(table)
            self._write(f"DELETE FROM {_quote(table)}", ())

    # === Meta flags ===

    def get_meta(self, key: str) -> str | None:
        """Get an internal flag value."""
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM _meta WHERE key = ?", (key,)
            ).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        """Set an internal flag value."""
        with self._lock:
            self._write(
                "INSERT OR REPLACE INTO _meta (key, value) VALUES (?, ?)", (key, value)
            )

    def delete_meta(self, key: str) -> None:
        """Remove an internal flag."""
        with self._lock:
            self._write("DELETE FROM _meta WHERE key = ?", (key,))
