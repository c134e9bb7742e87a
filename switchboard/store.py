"""SQLite persistence for dynamic commands.

One table, ``commands_v2``, holds every dynamic command. Databases
created by older releases have a ``commands`` table without the
category column; it is copied over and dropped the first time the
process starts against them.

All methods are synchronous and share one connection guarded by a
re-entrant lock. Async callers run them through asyncio.to_thread().

Key classes:
    CommandStore: Schema owner and CRUD for dynamic command rows.

Key functions:
    parse_bool: Lenient boolean parser used for the admin flag.
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Optional, Set, Union

import structlog

from .commands.base import CommandDefinition, CommandKind, Payload
from .exceptions import StorageError, UnknownFieldError

logger = structlog.get_logger("switchboard.store")

TABLE = "commands_v2"
LEGACY_TABLE = "commands"

# Columns an update may touch. The name is the key and never changes.
MUTABLE_FIELDS = frozenset({"helpText", "category", "admin", "title", "body", "imageUrl"})

_TRUE = frozenset({"true", "1"})
_FALSE = frozenset({"false", "0"})


def parse_bool(value: Union[str, int, bool, None]) -> bool:
    """Parse "true"/"false" in any casing (and 1/0) into a bool.

    Raises:
        ValueError: for anything else, including None.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
    raise ValueError(f"not a boolean: {value!r}")


class CommandStore:
    """Durable table of dynamic command definitions.

    Args:
        db_path: SQLite database file. ``":memory:"`` is accepted for tests.
    """

    def __init__(self, db_path: Union[Path, str]):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Open the shared connection (idempotent)."""
        with self._lock:
            if self._conn is not None:
                return
            if str(self.db_path) != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            # Autocommit mode: transactions are opened explicitly
            self._conn = sqlite3.connect(
                str(self.db_path), check_same_thread=False, isolation_level=None
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")
            logger.info("store_opened", path=str(self.db_path))

    def initialize(self) -> int:
        """Open, create the schema and migrate legacy rows.

        Returns:
            Number of legacy rows migrated (0 when there was nothing to do).

        Raises:
            StorageError: if the schema cannot be created or migrated.
        """
        try:
            self.open()
        except sqlite3.Error as e:
            raise StorageError("Cannot open command database", operation="open",
                               path=str(self.db_path), error=str(e)) from e
        self.ensure_schema()
        return self.migrate_legacy()

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.info("store_closed")

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("Command store is not open", operation="connect")
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside BEGIN IMMEDIATE ... COMMIT, rolling back on error."""
        with self._lock:
            conn = self.conn
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def ensure_schema(self) -> None:
        """Create the current table if absent. Safe on every start."""
        try:
            with self._lock:
                self.conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {TABLE} (
                        name TEXT PRIMARY KEY COLLATE NOCASE,
                        helpText TEXT,
                        category TEXT,
                        admin BOOLEAN,
                        title TEXT,
                        body TEXT,
                        imageUrl TEXT
                    )
                """)
        except sqlite3.Error as e:
            logger.error("schema_creation_failed", table=TABLE, error=str(e))
            raise StorageError("Cannot create command table", operation="ensure_schema",
                               error=str(e)) from e

    def legacy_exists(self) -> bool:
        with self._lock:
            row = self.conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
                (LEGACY_TABLE,),
            ).fetchone()
        return row is not None

    def migrate_legacy(self) -> int:
        """Copy the legacy ``commands`` table into ``commands_v2`` and drop it.

        The copy and the drop share one transaction, so an interrupted
        migration leaves the legacy table in place and is retried on the
        next start. Rows whose name already exists in the current table
        are left alone.

        Returns:
            Number of rows copied. 0 if there was no legacy table.
        """
        try:
            with self._transaction() as conn:
                exists = conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
                    (LEGACY_TABLE,),
                ).fetchone()
                if exists is None:
                    return 0
                legacy_count = conn.execute(
                    f"SELECT COUNT(*) FROM {LEGACY_TABLE}"
                ).fetchone()[0]
                cursor = conn.execute(f"""
                    INSERT OR IGNORE INTO {TABLE}
                        (name, helpText, category, admin, title, body, imageUrl)
                    SELECT name, helpText, NULL, admin, title, body, imageUrl
                    FROM {LEGACY_TABLE}
                """)
                copied = cursor.rowcount
                conn.execute(f"DROP TABLE {LEGACY_TABLE}")
        except sqlite3.Error as e:
            logger.error("legacy_migration_failed", error=str(e))
            raise StorageError("Legacy migration failed", operation="migrate_legacy",
                               error=str(e)) from e

        if copied != legacy_count:
            logger.warning(
                "legacy_rows_skipped",
                legacy_rows=legacy_count,
                copied=copied,
                reason="name already present in current table",
            )
        logger.info("legacy_migrated", rows=copied, table=TABLE)
        return copied

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_all(self) -> List[CommandDefinition]:
        """Every well-formed row as a dynamic CommandDefinition.

        Malformed rows are logged and skipped.

        Raises:
            StorageError: if the table cannot be read.
        """
        try:
            with self._lock:
                rows = self.conn.execute(f"SELECT * FROM {TABLE} ORDER BY name").fetchall()
        except sqlite3.Error as e:
            logger.error("list_commands_failed", error=str(e))
            raise StorageError("Cannot read commands", operation="list_all",
                               error=str(e)) from e

        definitions = []
        for row in rows:
            try:
                definitions.append(_row_to_definition(row))
            except (ValueError, TypeError) as e:
                logger.warning("malformed_command_row_skipped", name=row["name"], error=str(e))
        return definitions

    def list_categories(self) -> Set[str]:
        """Distinct non-null categories.

        Raises:
            StorageError: if the table cannot be read.
        """
        try:
            with self._lock:
                rows = self.conn.execute(
                    f"SELECT DISTINCT category FROM {TABLE} WHERE category IS NOT NULL"
                ).fetchall()
        except sqlite3.Error as e:
            logger.error("list_categories_failed", error=str(e))
            raise StorageError("Cannot read categories", operation="list_categories",
                               error=str(e)) from e
        return {row["category"] for row in rows}

    def get(self, name: str) -> Optional[CommandDefinition]:
        """Load one command by name, or None if absent or malformed.

        Raises:
            StorageError: if the table cannot be read.
        """
        try:
            with self._lock:
                row = self.conn.execute(
                    f"SELECT * FROM {TABLE} WHERE lower(name) = ?", (name.lower(),)
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageError("Cannot read command", operation="get",
                               name=name, error=str(e)) from e
        if row is None:
            return None
        try:
            return _row_to_definition(row)
        except (ValueError, TypeError) as e:
            logger.warning("malformed_command_row_skipped", name=row["name"], error=str(e))
            return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, definition: CommandDefinition) -> bool:
        """Insert a new command row. False if the name exists or on error."""
        try:
            with self._transaction() as conn:
                conn.execute(
                    f"INSERT INTO {TABLE} (name, helpText, category, admin, title, body, imageUrl) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    _definition_params(definition),
                )
        except sqlite3.IntegrityError:
            logger.warning("insert_duplicate_name", name=definition.name)
            return False
        except (sqlite3.Error, StorageError) as e:
            logger.error("insert_failed", name=definition.name, error=str(e))
            return False
        logger.info("command_inserted", name=definition.name)
        return True

    def replace(self, definition: CommandDefinition) -> bool:
        """Overwrite every mutable field of an existing row.

        Returns:
            False if no row has this name or on error.
        """
        name, *values = _definition_params(definition)
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    f"UPDATE {TABLE} SET helpText = ?, category = ?, admin = ?, "
                    "title = ?, body = ?, imageUrl = ? WHERE lower(name) = ?",
                    (*values, name),
                )
        except (sqlite3.Error, StorageError) as e:
            logger.error("replace_failed", name=definition.name, error=str(e))
            return False
        if cursor.rowcount == 0:
            logger.warning("replace_missing_row", name=definition.name)
            return False
        logger.info("command_replaced", name=definition.name)
        return True

    def upsert(self, definition: CommandDefinition) -> bool:
        """Create the row or overwrite every mutable field of it.

        Matches existing rows case-insensitively, so rows migrated with a
        mixed-case name and rows the registry skipped as malformed are
        overwritten rather than duplicated.

        Returns:
            False on error.
        """
        name, *values = _definition_params(definition)
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    f"UPDATE {TABLE} SET helpText = ?, category = ?, admin = ?, "
                    "title = ?, body = ?, imageUrl = ? WHERE lower(name) = ?",
                    (*values, name),
                )
                created = cursor.rowcount == 0
                if created:
                    conn.execute(
                        f"INSERT INTO {TABLE} (name, helpText, category, admin, title, body, imageUrl) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?)",
                        (name, *values),
                    )
        except (sqlite3.Error, StorageError) as e:
            logger.error("upsert_failed", name=definition.name, error=str(e))
            return False
        logger.info("command_saved", name=definition.name, created=created)
        return True

    def update(self, name: str, field_name: str, value: Any) -> bool:
        """Set a single mutable field on an existing row.

        Args:
            name: Command name (case-insensitive).
            field_name: One of MUTABLE_FIELDS.
            value: New value; the admin field accepts "true"/"false" in any casing.

        Returns:
            False if no row has this name or on error.

        Raises:
            UnknownFieldError: field_name is not in the allow-list.
            ValueError: an admin value that is not a boolean.
        """
        if field_name not in MUTABLE_FIELDS:
            raise UnknownFieldError(field_name, name=name)
        if field_name == "admin":
            value = parse_bool(value)

        # field_name is one of the allow-listed literals above
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    f"UPDATE {TABLE} SET {field_name} = ? WHERE lower(name) = ?",
                    (value, name.lower()),
                )
        except (sqlite3.Error, StorageError) as e:
            logger.error("update_failed", name=name, field=field_name, error=str(e))
            return False
        if cursor.rowcount == 0:
            logger.warning("update_missing_row", name=name, field=field_name)
            return False
        logger.info("command_updated", name=name, field=field_name)
        return True

    def delete(self, name: str) -> bool:
        """Delete a row. False if it did not exist or on error."""
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    f"DELETE FROM {TABLE} WHERE lower(name) = ?", (name.lower(),)
                )
        except (sqlite3.Error, StorageError) as e:
            logger.error("delete_failed", name=name, error=str(e))
            return False
        if cursor.rowcount == 0:
            logger.info("delete_missing_row", name=name)
            return False
        logger.info("command_deleted", name=name)
        return True


def _definition_params(definition: CommandDefinition) -> tuple:
    payload = definition.payload
    return (
        definition.name.lower(),
        definition.help_text,
        definition.category,
        definition.requires_admin,
        payload.title,
        payload.body,
        payload.image_url,
    )


def _row_to_definition(row: sqlite3.Row) -> CommandDefinition:
    name = row["name"]
    if not isinstance(name, str) or not name.strip():
        raise ValueError("missing command name")
    admin = row["admin"]
    return CommandDefinition(
        name=name.strip().lower(),
        kind=CommandKind.DYNAMIC,
        requires_admin=False if admin is None else parse_bool(admin),
        help_text=row["helpText"] or "",
        category=row["category"],
        payload=Payload(
            title=row["title"],
            body=row["body"],
            image_url=row["imageUrl"],
        ),
    )
