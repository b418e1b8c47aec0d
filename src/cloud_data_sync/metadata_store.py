"""
Sync state tracking for incremental bucket synchronization.

Provides:
- Persistent per-object sync records keyed by (mapping key, object name)
- Forward-only, transactional schema migrations
- Thread-safe access for parallel object workers
"""

import logging
import re
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .backend import to_utc
from .exceptions import ClosedError, SchemaError, StoreError

logger = logging.getLogger(__name__)


class SyncRecordStatus(str, Enum):
    """Outcome of the last sync attempt for an object."""
    SUCCESS = "success"
    FAILED_GET = "failed_get"
    FAILED_UPLOAD = "failed_upload"


@dataclass
class SyncRecord:
    """Last known state of one object within one mapping."""
    mapping_key: str
    object_name: str
    size: int
    last_modified: datetime
    etag: str
    content_type: Optional[str]
    last_synced_at: datetime
    status: SyncRecordStatus

    def __post_init__(self):
        self.last_modified = to_utc(self.last_modified)
        self.last_synced_at = to_utc(self.last_synced_at)
        if not isinstance(self.status, SyncRecordStatus):
            self.status = SyncRecordStatus(self.status)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "mapping_key": self.mapping_key,
            "object_name": self.object_name,
            "size": self.size,
            "last_modified": self.last_modified.isoformat(),
            "etag": self.etag,
            "content_type": self.content_type,
            "last_synced_at": self.last_synced_at.isoformat(),
            "status": self.status.value,
        }


# ============================================================================
# Schema migrations
# ============================================================================

_FILE_METADATA_COLUMNS = """
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    mapping_id TEXT NOT NULL,
    object_name TEXT NOT NULL,
    size INTEGER NOT NULL,
    last_modified TIMESTAMP NOT NULL,
    etag TEXT,
    content_type TEXT,
    last_synced TIMESTAMP NOT NULL,
    sync_status TEXT NOT NULL,
    UNIQUE(mapping_id, object_name)
"""

_COPY_COLUMNS = (
    "object_name, size, last_modified, etag, content_type, last_synced, sync_status"
)


def _table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT COUNT(*) FROM sqlite_master WHERE type = 'table' AND name = ?",
        (table,),
    ).fetchone()
    return row[0] > 0


def _column_names(conn: sqlite3.Connection, table: str) -> List[str]:
    return [row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()]


def _create_file_metadata(conn: sqlite3.Connection, table: str = "file_metadata") -> None:
    conn.execute(f"CREATE TABLE IF NOT EXISTS {table} ({_FILE_METADATA_COLUMNS})")


def _create_index(conn: sqlite3.Connection) -> None:
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_file_metadata_mapping_object
        ON file_metadata(mapping_id, object_name)
    """)


def _migration_base_table(conn: sqlite3.Connection) -> None:
    """Create the file_metadata table unless a legacy layout is present."""
    columns = _column_names(conn, "file_metadata")
    if "bucket_name" in columns or "source_bucket" in columns:
        # Legacy table, re-keyed by the next migration
        return
    _create_file_metadata(conn)
    _create_index(conn)


def _migration_composite_key(conn: sqlite3.Connection) -> None:
    """Re-key legacy per-bucket rows to the composite mapping key."""
    if not _table_exists(conn, "file_metadata"):
        _create_file_metadata(conn)
        _create_index(conn)
        return

    columns = _column_names(conn, "file_metadata")
    if "mapping_id" in columns:
        return

    if "bucket_name" in columns:
        key_expr = "'default:' || bucket_name || '->default:' || bucket_name"
    elif "source_bucket" in columns and "target_bucket" in columns:
        key_expr = "'default:' || source_bucket || '->default:' || target_bucket"
    else:
        raise sqlite3.DatabaseError(
            f"Unrecognized file_metadata layout: {', '.join(columns)}"
        )

    conn.execute("DROP TABLE IF EXISTS file_metadata_new")
    _create_file_metadata(conn, "file_metadata_new")
    conn.execute(f"""
        INSERT OR IGNORE INTO file_metadata_new (mapping_id, {_COPY_COLUMNS})
        SELECT {key_expr}, {_COPY_COLUMNS}
        FROM file_metadata
    """)
    conn.execute("DROP TABLE file_metadata")
    conn.execute("ALTER TABLE file_metadata_new RENAME TO file_metadata")
    _create_index(conn)


MIGRATIONS: Dict[int, Callable[[sqlite3.Connection], None]] = {
    1: _migration_base_table,
    2: _migration_composite_key,
}

CURRENT_SCHEMA_VERSION = max(MIGRATIONS)


# ============================================================================
# Timestamp helpers
# ============================================================================

_FRACTION_RE = re.compile(r"\.(\d+)")
_OFFSET_RE = re.compile(r"\s*([+-]\d{2}):?(\d{2})$")


def _format_timestamp(value: datetime) -> str:
    return to_utc(value).isoformat()


def _parse_timestamp(value: Any) -> datetime:
    """Parse stored timestamps, including ones written by older releases."""
    if isinstance(value, datetime):
        return to_utc(value)

    text = str(value).strip()
    if text.endswith(" UTC"):
        text = text[:-4]
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _OFFSET_RE.sub(r"\1:\2", text)
    # fromisoformat before 3.11 only takes 3 or 6 fractional digits
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    return to_utc(datetime.fromisoformat(text))


# ============================================================================
# Metadata store
# ============================================================================

class MetadataStore:
    """SQLite-backed store of per-object sync records."""

    def __init__(self, conn: sqlite3.Connection, path: Path):
        """
        Wrap an open connection. Use MetadataStore.open() instead.

        Args:
            conn: Connection opened in autocommit mode
            path: Database file path
        """
        self._conn = conn
        self.path = path
        self._lock = threading.RLock()
        self._closed = False

    @classmethod
    def open(cls, path) -> "MetadataStore":
        """
        Open (or create) a store and bring its schema up to date.

        Args:
            path: Path to the SQLite database file

        Returns:
            Ready-to-use MetadataStore

        Raises:
            OSError: If the storage location cannot be created or opened
            SchemaError: If a migration fails
        """
        db_path = Path(path)
        try:
            if str(db_path) != ":memory:":
                db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(db_path),
                isolation_level=None,
                check_same_thread=False,
            )
            # Forces SQLite to actually open the file
            conn.execute("PRAGMA schema_version").fetchone()
        except (OSError, sqlite3.Error) as e:
            raise OSError(f"Cannot open metadata store at {db_path}: {e}") from e

        conn.row_factory = sqlite3.Row
        store = cls(conn, db_path)
        try:
            store._migrate()
        except SchemaError:
            conn.close()
            raise

        logger.info(f"Opened metadata store at {db_path} (schema v{store.schema_version()})")
        return store

    def __enter__(self) -> "MetadataStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _migrate(self) -> None:
        """Apply missing migrations in one transaction."""
        conn = self._conn
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    applied_at TIMESTAMP NOT NULL
                )
            """)
            current = self.schema_version()
        except sqlite3.Error as e:
            raise SchemaError(f"Cannot read schema version: {e}") from e

        pending = sorted(v for v in MIGRATIONS if v > current)
        if not pending:
            return

        logger.info(f"Migrating metadata store from v{current} to v{pending[-1]}")
        version = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            for version in pending:
                logger.debug(f"Applying migration {version}")
                MIGRATIONS[version](conn)
                conn.execute(
                    "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                    (version, _format_timestamp(datetime.now(timezone.utc))),
                )
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            logger.error(f"Migration {version} failed, store left at v{current}: {e}")
            raise SchemaError(f"Schema migration failed: {e}", version=version) from e

    def schema_version(self) -> int:
        """Return the highest applied migration version."""
        row = self._conn.execute(
            "SELECT COALESCE(MAX(version), 0) FROM schema_migrations"
        ).fetchone()
        return row[0]

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def _check_open(self) -> None:
        if self._closed:
            raise ClosedError(f"Metadata store {self.path} is closed")

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> SyncRecord:
        return SyncRecord(
            mapping_key=row["mapping_id"],
            object_name=row["object_name"],
            size=row["size"],
            last_modified=_parse_timestamp(row["last_modified"]),
            etag=row["etag"] or "",
            content_type=row["content_type"],
            last_synced_at=_parse_timestamp(row["last_synced"]),
            status=SyncRecordStatus(row["sync_status"]),
        )

    def get(self, mapping_key: str, object_name: str) -> Optional[SyncRecord]:
        """
        Get the record for an object.

        Returns:
            SyncRecord if found, None otherwise
        """
        with self._lock:
            self._check_open()
            try:
                row = self._conn.execute("""
                    SELECT mapping_id, object_name, size, last_modified, etag,
                           content_type, last_synced, sync_status
                    FROM file_metadata
                    WHERE mapping_id = ? AND object_name = ?
                """, (mapping_key, object_name)).fetchone()
            except sqlite3.Error as e:
                raise StoreError(f"Error querying metadata for {object_name}: {e}") from e

        if row is None:
            return None
        try:
            return self._row_to_record(row)
        except ValueError as e:
            raise StoreError(f"Corrupt metadata record for {object_name}: {e}") from e

    def upsert(self, record: SyncRecord) -> None:
        """Insert or fully replace the record for (mapping_key, object_name)."""
        with self._lock:
            self._check_open()
            try:
                self._conn.execute("""
                    INSERT INTO file_metadata (
                        mapping_id, object_name, size, last_modified, etag,
                        content_type, last_synced, sync_status
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(mapping_id, object_name) DO UPDATE SET
                        size = excluded.size,
                        last_modified = excluded.last_modified,
                        etag = excluded.etag,
                        content_type = excluded.content_type,
                        last_synced = excluded.last_synced,
                        sync_status = excluded.sync_status
                """, (
                    record.mapping_key,
                    record.object_name,
                    record.size,
                    _format_timestamp(record.last_modified),
                    record.etag,
                    record.content_type,
                    _format_timestamp(record.last_synced_at),
                    record.status.value,
                ))
            except sqlite3.Error as e:
                raise StoreError(
                    f"Error inserting/updating metadata for {record.object_name}: {e}"
                ) from e

    def list_by_mapping(self, mapping_key: str) -> List[SyncRecord]:
        """Return every record stored for a mapping (unordered)."""
        with self._lock:
            self._check_open()
            try:
                rows = self._conn.execute("""
                    SELECT mapping_id, object_name, size, last_modified, etag,
                           content_type, last_synced, sync_status
                    FROM file_metadata
                    WHERE mapping_id = ?
                """, (mapping_key,)).fetchall()
            except sqlite3.Error as e:
                raise StoreError(f"Error listing metadata for {mapping_key}: {e}") from e

        records = []
        for row in rows:
            try:
                records.append(self._row_to_record(row))
            except ValueError as e:
                logger.warning(
                    f"Skipping undecodable metadata record {row['object_name']} "
                    f"in {mapping_key}: {e}"
                )
        return records

    def delete(self, mapping_key: str, object_name: str) -> None:
        """Delete a record; deleting a missing record is not an error."""
        with self._lock:
            self._check_open()
            try:
                self._conn.execute(
                    "DELETE FROM file_metadata WHERE mapping_id = ? AND object_name = ?",
                    (mapping_key, object_name),
                )
            except sqlite3.Error as e:
                raise StoreError(f"Error deleting metadata for {object_name}: {e}") from e

    def count_by_status(self, mapping_key: Optional[str] = None) -> Dict[str, Dict[str, int]]:
        """
        Count records by status.

        Args:
            mapping_key: Restrict to one mapping; all mappings when None

        Returns:
            {mapping_key: {status: count}}
        """
        query = "SELECT mapping_id, sync_status, COUNT(*) FROM file_metadata"
        params = ()
        if mapping_key is not None:
            query += " WHERE mapping_id = ?"
            params = (mapping_key,)
        query += " GROUP BY mapping_id, sync_status"

        with self._lock:
            self._check_open()
            try:
                rows = self._conn.execute(query, params).fetchall()
            except sqlite3.Error as e:
                raise StoreError(f"Error counting metadata: {e}") from e

        counts: Dict[str, Dict[str, int]] = {}
        for mapping_id, status, count in rows:
            counts.setdefault(mapping_id, {})[status] = count
        return counts

    def close(self) -> None:
        """Close the store. Later operations raise ClosedError."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._conn.close()
            logger.debug(f"Closed metadata store at {self.path}")
