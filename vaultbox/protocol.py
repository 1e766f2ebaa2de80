"""
Protocol definitions for vaultbox's collaborators.

The metadata engine, search service and relation resolver only talk to
storage through these interfaces, so each can run against the SQLite
store or an in-memory fake:
- FieldDefinitionProvider: a vault's field schema, ordered by position
- VaultStoreProtocol: point/bulk lookups, listing, writes, FTS queries
- ImageStorageProtocol: cover image files, addressed by relative path
"""

from pathlib import Path
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

from .types import Entry, FieldDefinition, FieldOptions, FieldType, Vault


@runtime_checkable
class FieldDefinitionProvider(Protocol):
    """Source of field definitions for metadata validation."""

    def list_fields(self, vault_id: int) -> list[FieldDefinition]: ...


@runtime_checkable
class VaultStoreProtocol(FieldDefinitionProvider, Protocol):
    """
    Persistence for vaults, entries and field definitions.

    Implemented by:
    - VaultStore (local SQLite with an FTS5 index)
    """

    # -- Vaults --

    def get_vault(self, id: int) -> Optional[Vault]: ...

    def get_vaults_many(self, ids: Sequence[int]) -> dict[int, Vault]: ...

    def list_vaults(self) -> list[Vault]: ...

    def insert_vault(
        self,
        name: str,
        description: Optional[str] = None,
        icon: Optional[str] = None,
        color: Optional[str] = None,
    ) -> Vault: ...

    def update_vault(self, vault_id: int, **changes: Any) -> Optional[Vault]: ...

    def delete_vault(self, id: int) -> bool: ...

    # -- Entries --

    def get_entry(self, id: int) -> Optional[Entry]: ...

    def get_entries_many(self, ids: Sequence[int]) -> dict[int, Entry]: ...

    def list_entries(
        self,
        vault_id: int,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Entry]: ...

    def count_entries(self, vault_id: int) -> int: ...

    def find_entries_by_title(
        self,
        vault_id: int,
        text: Optional[str],
        limit: int,
    ) -> list[Entry]: ...

    def insert_entry(
        self,
        vault_id: int,
        title: str,
        description: Optional[str] = None,
        metadata: Optional[str] = None,
    ) -> Entry: ...

    def update_entry(self, entry_id: int, **changes: Any) -> Optional[Entry]: ...

    def delete_entry(self, id: int) -> bool: ...

    # -- Full-text index (raw parameterized queries) --

    def count_matches(self, vault_id: int, match: str) -> int: ...

    def find_matches(
        self,
        vault_id: int,
        match: str,
        limit: int,
        offset: int,
    ) -> list[Entry]: ...

    # -- Field definitions --

    def get_field(self, id: int) -> Optional[FieldDefinition]: ...

    def find_field_by_name(self, vault_id: int, name: str) -> Optional[FieldDefinition]: ...

    def insert_field(
        self,
        vault_id: int,
        name: str,
        field_type: FieldType,
        options: Optional[FieldOptions] = None,
        required: bool = False,
    ) -> FieldDefinition: ...

    def update_field(self, field_id: int, **changes: Any) -> Optional[FieldDefinition]: ...

    def delete_field(self, id: int) -> bool: ...

    def set_field_positions(self, positions: dict[int, int]) -> None: ...

    # -- Lifecycle --

    def close(self) -> None: ...


@runtime_checkable
class ImageStorageProtocol(Protocol):
    """Cover image files. Entries only ever hold the relative path string."""

    def save_local_image(self, vault_id: int, entry_id: int, source: Path) -> str: ...

    def delete_image(self, relative_path: str) -> None: ...

    def read_image(self, relative_path: str) -> bytes: ...

    def get_full_path(self, relative_path: str) -> Path: ...

    def delete_vault_images(self, vault_id: int) -> None: ...
