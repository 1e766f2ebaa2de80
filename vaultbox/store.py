"""
Vault store using SQLite.

The store is the source of truth for:
- Vaults, entries and field definitions
- Entry metadata (opaque JSON text, validated by the application)
- The full-text index over entry titles and descriptions

The FTS5 table ``entries_fts`` is an external-content index over
``entries``. Triggers keep it in lockstep with entry inserts, deletes and
updates (an update replaces the whole indexed document), so the index never
shows stale title or description text.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

from .errors import PersistenceFailure
from .types import Entry, FieldDefinition, FieldOptions, FieldType, Vault, utc_now

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

# Each step upgrades the schema by one version (index = from-version)
_MIGRATIONS = [
    # v0 → v1: vaults, entries, field definitions
    """
    CREATE TABLE IF NOT EXISTS vaults (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        name        TEXT NOT NULL,
        description TEXT,
        icon        TEXT,
        color       TEXT,
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS entries (
        id               INTEGER PRIMARY KEY AUTOINCREMENT,
        vault_id         INTEGER NOT NULL REFERENCES vaults(id) ON DELETE CASCADE,
        title            TEXT NOT NULL,
        description      TEXT,
        metadata         TEXT,
        cover_image_path TEXT,
        created_at       TEXT NOT NULL,
        updated_at       TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_entries_vault_id ON entries(vault_id);
    CREATE INDEX IF NOT EXISTS idx_entries_created_at ON entries(created_at);
    CREATE INDEX IF NOT EXISTS idx_entries_updated_at ON entries(updated_at);

    CREATE TABLE IF NOT EXISTS field_definitions (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        vault_id    INTEGER NOT NULL REFERENCES vaults(id) ON DELETE CASCADE,
        name        TEXT NOT NULL,
        field_type  TEXT NOT NULL CHECK (field_type IN
            ('text', 'number', 'date', 'url', 'boolean', 'select', 'relation')),
        options     TEXT,
        position    INTEGER NOT NULL DEFAULT 0,
        required    INTEGER NOT NULL DEFAULT 0,
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL,
        UNIQUE(vault_id, name)
    );

    CREATE INDEX IF NOT EXISTS idx_field_definitions_vault ON field_definitions(vault_id);
    """,
    # v1 → v2: full-text index with sync triggers, populated from existing rows
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS entries_fts USING fts5(
        title,
        description,
        content='entries',
        content_rowid='id'
    );

    CREATE TRIGGER IF NOT EXISTS entries_fts_insert AFTER INSERT ON entries BEGIN
        INSERT INTO entries_fts(rowid, title, description)
        VALUES (new.id, new.title, COALESCE(new.description, ''));
    END;

    CREATE TRIGGER IF NOT EXISTS entries_fts_delete AFTER DELETE ON entries BEGIN
        INSERT INTO entries_fts(entries_fts, rowid, title, description)
        VALUES ('delete', old.id, old.title, COALESCE(old.description, ''));
    END;

    CREATE TRIGGER IF NOT EXISTS entries_fts_update AFTER UPDATE ON entries BEGIN
        INSERT INTO entries_fts(entries_fts, rowid, title, description)
        VALUES ('delete', old.id, old.title, COALESCE(old.description, ''));
        INSERT INTO entries_fts(rowid, title, description)
        VALUES (new.id, new.title, COALESCE(new.description, ''));
    END;

    INSERT INTO entries_fts(entries_fts) VALUES ('rebuild');
    """,
]

_ENTRY_COLUMNS = (
    "id, vault_id, title, description, metadata, cover_image_path, created_at, updated_at"
)
_FIELD_COLUMNS = (
    "id, vault_id, name, field_type, options, position, required, created_at, updated_at"
)

_VAULT_UPDATABLE = frozenset({"name", "description", "icon", "color"})
_ENTRY_UPDATABLE = frozenset({"title", "description", "metadata", "cover_image_path"})
_FIELD_UPDATABLE = frozenset({"name", "options", "required"})


def escape_like(text: str) -> str:
    """Escape LIKE wildcards so text matches literally (ESCAPE '\\')."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_to_vault(row: sqlite3.Row) -> Vault:
    return Vault(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        icon=row["icon"],
        color=row["color"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_entry(row: sqlite3.Row) -> Entry:
    return Entry(
        id=row["id"],
        vault_id=row["vault_id"],
        title=row["title"],
        description=row["description"],
        metadata=row["metadata"],
        cover_image_path=row["cover_image_path"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _parse_options(options_json: Optional[str]) -> Optional[FieldOptions]:
    """Stored options; unparseable text is treated as no options."""
    if not options_json:
        return None
    try:
        data = json.loads(options_json)
        if not isinstance(data, dict):
            return None
        return FieldOptions.from_dict(data)
    except (ValueError, TypeError):
        logger.warning("Ignoring unparseable field options: %r", options_json)
        return None


def _row_to_field(row: sqlite3.Row) -> FieldDefinition:
    try:
        field_type = FieldType(row["field_type"])
    except ValueError:
        field_type = FieldType.TEXT
    return FieldDefinition(
        id=row["id"],
        vault_id=row["vault_id"],
        name=row["name"],
        field_type=field_type,
        options=_parse_options(row["options"]),
        position=row["position"],
        required=bool(row["required"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _options_json(options: Optional[FieldOptions]) -> Optional[str]:
    if options is None:
        return None
    return json.dumps(options.to_dict(), ensure_ascii=False)


class VaultStore:
    """
    SQLite-backed store for vaults, entries and field definitions.

    A single connection is shared by all callers. Statements are
    serialized with a lock; SQLite runs in WAL mode so readers in other
    processes see consistent snapshots while a write is in progress.
    """

    def __init__(self, store_path: "Path | str"):
        """
        Args:
            store_path: Path to SQLite database file, or ":memory:"
        """
        self._db_path = store_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self) -> None:
        """Open the connection and bring the schema up to date."""
        if str(self._db_path) != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(
                str(self._db_path), check_same_thread=False, timeout=30.0,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._migrate()
        except sqlite3.Error as e:
            raise PersistenceFailure(e) from e

    def _migrate(self) -> None:
        version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if version >= SCHEMA_VERSION:
            return
        for step in range(version, SCHEMA_VERSION):
            logger.debug("Migrating vault store schema v%d → v%d", step, step + 1)
            self._conn.executescript(_MIGRATIONS[step])
            self._conn.execute(f"PRAGMA user_version = {step + 1}")
        self._conn.commit()

    @contextmanager
    def _cursor(self, *, commit: bool = False) -> Iterator[sqlite3.Connection]:
        """Serialize access and translate driver errors."""
        with self._lock:
            if self._conn is None:
                raise PersistenceFailure(sqlite3.ProgrammingError("store is closed"))
            try:
                yield self._conn
                if commit:
                    self._conn.commit()
            except sqlite3.Error as e:
                if commit:
                    self._conn.rollback()
                raise PersistenceFailure(e) from e

    # -------------------------------------------------------------------------
    # Vaults
    # -------------------------------------------------------------------------

    def insert_vault(
        self,
        name: str,
        description: Optional[str] = None,
        icon: Optional[str] = None,
        color: Optional[str] = None,
    ) -> Vault:
        """Insert a vault and return the stored record."""
        now = utc_now()
        with self._cursor(commit=True) as conn:
            cursor = conn.execute("""
                INSERT INTO vaults (name, description, icon, color, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (name, description, icon, color, now, now))
            vault_id = cursor.lastrowid
        return Vault(
            id=vault_id,
            name=name,
            description=description,
            icon=icon,
            color=color,
            created_at=now,
            updated_at=now,
        )

    def get_vault(self, id: int) -> Optional[Vault]:
        with self._cursor() as conn:
            row = conn.execute("SELECT * FROM vaults WHERE id = ?", (id,)).fetchone()
        return _row_to_vault(row) if row is not None else None

    def get_vaults_many(self, ids: Sequence[int]) -> dict[int, Vault]:
        """
        Get multiple vaults by ID in one query.

        Returns:
            Dict mapping id → Vault (missing IDs omitted)
        """
        unique = list(dict.fromkeys(ids))
        if not unique:
            return {}
        placeholders = ",".join("?" * len(unique))
        with self._cursor() as conn:
            rows = conn.execute(
                f"SELECT * FROM vaults WHERE id IN ({placeholders})", unique,
            ).fetchall()
        return {row["id"]: _row_to_vault(row) for row in rows}

    def list_vaults(self) -> list[Vault]:
        """All vaults, newest first."""
        with self._cursor() as conn:
            rows = conn.execute(
                "SELECT * FROM vaults ORDER BY created_at DESC, id DESC"
            ).fetchall()
        return [_row_to_vault(row) for row in rows]

    def update_vault(self, vault_id: int, **changes: Any) -> Optional[Vault]:
        """
        Update the given columns of a vault; updated_at is always refreshed.

        Returns:
            The updated Vault, or None if it doesn't exist
        """
        self._update("vaults", _VAULT_UPDATABLE, vault_id, changes)
        return self.get_vault(vault_id)

    def delete_vault(self, id: int) -> bool:
        """Delete a vault. Entries and field definitions cascade."""
        with self._cursor(commit=True) as conn:
            cursor = conn.execute("DELETE FROM vaults WHERE id = ?", (id,))
        return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Entries
    # -------------------------------------------------------------------------

    def insert_entry(
        self,
        vault_id: int,
        title: str,
        description: Optional[str] = None,
        metadata: Optional[str] = None,
    ) -> Entry:
        """Insert an entry; the insert trigger indexes it for search."""
        now = utc_now()
        with self._cursor(commit=True) as conn:
            cursor = conn.execute("""
                INSERT INTO entries
                (vault_id, title, description, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (vault_id, title, description, metadata, now, now))
            entry_id = cursor.lastrowid
        return Entry(
            id=entry_id,
            vault_id=vault_id,
            title=title,
            description=description,
            metadata=metadata,
            created_at=now,
            updated_at=now,
        )

    def get_entry(self, id: int) -> Optional[Entry]:
        with self._cursor() as conn:
            row = conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM entries WHERE id = ?", (id,),
            ).fetchone()
        return _row_to_entry(row) if row is not None else None

    def get_entries_many(self, ids: Sequence[int]) -> dict[int, Entry]:
        """
        Get multiple entries by ID in one query.

        Returns:
            Dict mapping id → Entry (missing IDs omitted)
        """
        unique = list(dict.fromkeys(ids))
        if not unique:
            return {}
        placeholders = ",".join("?" * len(unique))
        with self._cursor() as conn:
            rows = conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM entries WHERE id IN ({placeholders})",
                unique,
            ).fetchall()
        return {row["id"]: _row_to_entry(row) for row in rows}

    def list_entries(
        self,
        vault_id: int,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Entry]:
        """
        List entries in a vault, newest first.

        Args:
            vault_id: Owning vault
            limit: Maximum number to return (None for all)
            offset: Rows to skip
        """
        with self._cursor() as conn:
            rows = conn.execute(f"""
                SELECT {_ENTRY_COLUMNS} FROM entries
                WHERE vault_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ? OFFSET ?
            """, (vault_id, limit if limit is not None else -1, offset)).fetchall()
        return [_row_to_entry(row) for row in rows]

    def count_entries(self, vault_id: int) -> int:
        with self._cursor() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM entries WHERE vault_id = ?", (vault_id,),
            ).fetchone()[0]

    def find_entries_by_title(
        self,
        vault_id: int,
        text: Optional[str],
        limit: int,
    ) -> list[Entry]:
        """
        Entries whose title contains text (case-insensitive), most recently
        updated first. Empty text matches every entry.
        """
        if text:
            sql = f"""
                SELECT {_ENTRY_COLUMNS} FROM entries
                WHERE vault_id = ? AND title LIKE ? ESCAPE '\\'
                ORDER BY updated_at DESC, id DESC
                LIMIT ?
            """
            params: tuple = (vault_id, f"%{escape_like(text)}%", limit)
        else:
            sql = f"""
                SELECT {_ENTRY_COLUMNS} FROM entries
                WHERE vault_id = ?
                ORDER BY updated_at DESC, id DESC
                LIMIT ?
            """
            params = (vault_id, limit)
        with self._cursor() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_entry(row) for row in rows]

    def update_entry(self, entry_id: int, **changes: Any) -> Optional[Entry]:
        """
        Update the given columns of an entry; updated_at is always refreshed.

        Passing ``description=None`` or ``cover_image_path=None`` clears it.

        Returns:
            The updated Entry, or None if it doesn't exist
        """
        self._update("entries", _ENTRY_UPDATABLE, entry_id, changes)
        return self.get_entry(entry_id)

    def delete_entry(self, id: int) -> bool:
        with self._cursor(commit=True) as conn:
            cursor = conn.execute("DELETE FROM entries WHERE id = ?", (id,))
        return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Full-text index
    # -------------------------------------------------------------------------

    def count_matches(self, vault_id: int, match: str) -> int:
        """Count entries in a vault matching an FTS5 expression."""
        with self._cursor() as conn:
            row = conn.execute("""
                SELECT COUNT(*) FROM entries e
                INNER JOIN entries_fts ON e.id = entries_fts.rowid
                WHERE e.vault_id = ? AND entries_fts MATCH ?
            """, (vault_id, match)).fetchone()
        return row[0] if row is not None else 0

    def find_matches(
        self,
        vault_id: int,
        match: str,
        limit: int,
        offset: int,
    ) -> list[Entry]:
        """One page of entries matching an FTS5 expression, newest first."""
        with self._cursor() as conn:
            rows = conn.execute("""
                SELECT e.id, e.vault_id, e.title, e.description, e.metadata,
                       e.cover_image_path, e.created_at, e.updated_at
                FROM entries e
                INNER JOIN entries_fts ON e.id = entries_fts.rowid
                WHERE e.vault_id = ? AND entries_fts MATCH ?
                ORDER BY e.created_at DESC, e.id DESC
                LIMIT ? OFFSET ?
            """, (vault_id, match, limit, offset)).fetchall()
        return [_row_to_entry(row) for row in rows]

    def rebuild_search_index(self) -> None:
        """Repopulate the full-text index from the entries table."""
        with self._cursor(commit=True) as conn:
            conn.execute("INSERT INTO entries_fts(entries_fts) VALUES ('rebuild')")
        logger.info("Rebuilt full-text search index")

    # -------------------------------------------------------------------------
    # Field definitions
    # -------------------------------------------------------------------------

    def insert_field(
        self,
        vault_id: int,
        name: str,
        field_type: FieldType,
        options: Optional[FieldOptions] = None,
        required: bool = False,
    ) -> FieldDefinition:
        """Insert a field definition at the end of the vault's field order."""
        now = utc_now()
        with self._cursor(commit=True) as conn:
            position = conn.execute(
                "SELECT COALESCE(MAX(position) + 1, 0) FROM field_definitions WHERE vault_id = ?",
                (vault_id,),
            ).fetchone()[0]
            cursor = conn.execute("""
                INSERT INTO field_definitions
                (vault_id, name, field_type, options, position, required, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                vault_id, name, field_type.value, _options_json(options),
                position, 1 if required else 0, now, now,
            ))
            field_id = cursor.lastrowid
        return FieldDefinition(
            id=field_id,
            vault_id=vault_id,
            name=name,
            field_type=field_type,
            options=options,
            position=position,
            required=required,
            created_at=now,
            updated_at=now,
        )

    def get_field(self, id: int) -> Optional[FieldDefinition]:
        with self._cursor() as conn:
            row = conn.execute(
                f"SELECT {_FIELD_COLUMNS} FROM field_definitions WHERE id = ?", (id,),
            ).fetchone()
        return _row_to_field(row) if row is not None else None

    def list_fields(self, vault_id: int) -> list[FieldDefinition]:
        """Field definitions of a vault, ordered by position."""
        with self._cursor() as conn:
            rows = conn.execute(f"""
                SELECT {_FIELD_COLUMNS} FROM field_definitions
                WHERE vault_id = ?
                ORDER BY position ASC, id ASC
            """, (vault_id,)).fetchall()
        return [_row_to_field(row) for row in rows]

    def find_field_by_name(self, vault_id: int, name: str) -> Optional[FieldDefinition]:
        with self._cursor() as conn:
            row = conn.execute(f"""
                SELECT {_FIELD_COLUMNS} FROM field_definitions
                WHERE vault_id = ? AND name = ?
            """, (vault_id, name)).fetchone()
        return _row_to_field(row) if row is not None else None

    def update_field(self, field_id: int, **changes: Any) -> Optional[FieldDefinition]:
        """
        Update the given columns of a field definition.

        Returns:
            The updated FieldDefinition, or None if it doesn't exist
        """
        if "options" in changes:
            changes["options"] = _options_json(changes["options"])
        if "required" in changes:
            changes["required"] = 1 if changes["required"] else 0
        self._update("field_definitions", _FIELD_UPDATABLE, field_id, changes)
        return self.get_field(field_id)

    def delete_field(self, id: int) -> bool:
        with self._cursor(commit=True) as conn:
            cursor = conn.execute("DELETE FROM field_definitions WHERE id = ?", (id,))
        return cursor.rowcount > 0

    def set_field_positions(self, positions: dict[int, int]) -> None:
        """Assign positions {field_id: position} in one transaction."""
        now = utc_now()
        with self._cursor(commit=True) as conn:
            conn.executemany(
                "UPDATE field_definitions SET position = ?, updated_at = ? WHERE id = ?",
                [(position, now, field_id) for field_id, position in positions.items()],
            )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _update(
        self,
        table: str,
        allowed: frozenset,
        id: int,
        changes: dict[str, Any],
    ) -> None:
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Cannot update {table} columns: {', '.join(sorted(unknown))}")
        columns = sorted(changes)
        assignments = ", ".join(f"{c} = ?" for c in columns + ["updated_at"])
        params = [changes[c] for c in columns] + [utc_now(), id]
        with self._cursor(commit=True) as conn:
            conn.execute(f"UPDATE {table} SET {assignments} WHERE id = ?", params)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
