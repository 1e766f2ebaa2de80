"""
Core API for vault collections.

VaultManager ties the store, metadata validation, search, relation
resolution and cover image storage together:
- Vault, entry and field-definition CRUD
- Entry writes gated by metadata validation, with lazy orphan cleanup
- Full-text search, relation resolution and the relation picker
"""

import logging
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from .config import StoreConfig, load_or_create_config, resolve_store_path
from .errors import (
    EntryNotFound,
    FieldNotFound,
    ValidationFailed,
    VaultboxError,
    VaultNotFound,
)
from .images import ImageStorage
from .metadata import MetadataValidator
from .protocol import ImageStorageProtocol, VaultStoreProtocol
from .relations import RelationResolver
from .search import SearchService, check_page
from .types import (
    Entry,
    EntryPage,
    EntryPickerItem,
    EntryUpdate,
    FieldDefinition,
    FieldOptions,
    FieldType,
    FieldUpdate,
    RelationRef,
    ResolvedRelation,
    SearchResults,
    ValidationResult,
    Vault,
    VaultUpdate,
    is_url,
)

logger = logging.getLogger(__name__)


def _required_text(value: str, message: str) -> str:
    value = value.strip()
    if not value:
        raise ValidationFailed(message)
    return value


class VaultManager:
    """
    Personal collection manager: vaults of entries with custom fields.

    Example:
        vm = VaultManager("~/collections")
        books = vm.create_vault("Books")
        vm.create_field(books.id, "Rating", FieldType.NUMBER,
                        FieldOptions(min=0, max=10))
        results = vm.search(books.id, "dune")
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        store: Optional[VaultStoreProtocol] = None,
        images: Optional[ImageStorageProtocol] = None,
    ) -> None:
        """
        Open (or create) a vaultbox store.

        Args:
            store_path: Store directory. Defaults to VAULTBOX_STORE_PATH,
                then ~/.vaultbox. Ignored when config is given.
            config: Pre-loaded StoreConfig (skips filesystem config discovery).
            store: Injected vault store (skips opening the SQLite database).
            images: Injected cover image storage.
        """
        # --- Config resolution ---
        if config is not None:
            self._config = config
        else:
            path = resolve_store_path(Path(store_path) if store_path is not None else None)
            self._config = load_or_create_config(path.resolve())
        self._store_path = self._config.path

        # --- Persistent operations log ---
        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._store_path)

        # --- Storage (injected or opened from config) ---
        self._owns_store = store is None
        if store is None:
            from .store import VaultStore
            store = VaultStore(self._config.database_path)
        self._store: VaultStoreProtocol = store
        self._images: ImageStorageProtocol = images or ImageStorage(
            self._store_path, max_size=self._config.max_image_size,
        )

        # --- Core services share the store handle ---
        self._validator = MetadataValidator(self._store)
        self._search = SearchService(self._store)
        self._relations = RelationResolver(self._store)

    @property
    def config(self) -> StoreConfig:
        """Public access to store configuration."""
        return self._config

    @property
    def store_path(self) -> Path:
        return self._store_path

    # -------------------------------------------------------------------------
    # Lookup helpers
    # -------------------------------------------------------------------------

    def _require_vault(self, vault_id: int) -> Vault:
        vault = self._store.get_vault(vault_id)
        if vault is None:
            raise VaultNotFound(vault_id)
        return vault

    def _require_entry(self, entry_id: int) -> Entry:
        entry = self._store.get_entry(entry_id)
        if entry is None:
            raise EntryNotFound(entry_id)
        return entry

    def _require_field(self, field_id: int) -> FieldDefinition:
        field = self._store.get_field(field_id)
        if field is None:
            raise FieldNotFound(field_id)
        return field

    def _discard_cover(self, cover: Optional[str]) -> None:
        """Delete a locally stored cover; failures are logged, not raised."""
        if not cover or is_url(cover):
            return
        try:
            self._images.delete_image(cover)
        except VaultboxError as e:
            logger.warning("Failed to delete cover image %s: %s", cover, e)

    # -------------------------------------------------------------------------
    # Vaults
    # -------------------------------------------------------------------------

    def create_vault(
        self,
        name: str,
        description: Optional[str] = None,
        icon: Optional[str] = None,
        color: Optional[str] = None,
    ) -> Vault:
        name = _required_text(name, "Name is required")
        vault = self._store.insert_vault(name, description, icon, color)
        logger.info("Created vault: %s (id=%d)", vault.name, vault.id)
        return vault

    def get_vault(self, vault_id: int) -> Vault:
        return self._require_vault(vault_id)

    def list_vaults(self) -> list[Vault]:
        """All vaults, newest first."""
        return self._store.list_vaults()

    def update_vault(self, vault_id: int, update: VaultUpdate) -> Vault:
        """Apply the attributes of update that are not None."""
        self._require_vault(vault_id)
        changes: dict[str, Any] = {}
        if update.name is not None:
            changes["name"] = _required_text(update.name, "Name cannot be empty")
        for attr in ("description", "icon", "color"):
            value = getattr(update, attr)
            if value is not None:
                changes[attr] = value
        vault = self._store.update_vault(vault_id, **changes)
        if vault is None:
            raise VaultNotFound(vault_id)
        logger.info("Updated vault: %s (id=%d)", vault.name, vault.id)
        return vault

    def delete_vault(self, vault_id: int) -> None:
        """Delete a vault with its entries, fields and cover images."""
        vault = self._require_vault(vault_id)
        logger.info("Deleting vault: %s (id=%d)", vault.name, vault.id)
        self._store.delete_vault(vault_id)
        try:
            self._images.delete_vault_images(vault_id)
        except VaultboxError as e:
            logger.warning("Failed to delete images of vault %d: %s", vault_id, e)

    # -------------------------------------------------------------------------
    # Entries
    # -------------------------------------------------------------------------

    def _check_metadata(self, result: ValidationResult, vault_id: int) -> None:
        for warning in result.warnings:
            logger.warning("Vault %d metadata: %s", vault_id, warning)
        if not result.is_valid:
            raise ValidationFailed("; ".join(result.errors), result.errors)

    def create_entry(
        self,
        vault_id: int,
        title: str,
        description: Optional[str] = None,
        metadata: Optional[str] = None,
    ) -> Entry:
        """
        Create an entry in a vault.

        Metadata must satisfy the vault's required fields and field types.

        Raises:
            ValidationFailed: Empty title, or metadata errors (in ``errors``)
            VaultNotFound: If the vault doesn't exist
        """
        title = _required_text(title, "Title is required")
        self._require_vault(vault_id)

        if metadata is not None:
            self._check_metadata(
                self._validator.validate_required_fields(vault_id, metadata), vault_id,
            )
            self._check_metadata(
                self._validator.validate_metadata(vault_id, metadata), vault_id,
            )
        else:
            self._check_metadata(
                self._validator.validate_required_fields(vault_id, None), vault_id,
            )

        entry = self._store.insert_entry(vault_id, title, description, metadata)
        logger.info(
            "Created entry: %s (id=%d) in vault %d", entry.title, entry.id, entry.vault_id,
        )
        return entry

    def get_entry(self, entry_id: int) -> Entry:
        return self._require_entry(entry_id)

    def list_entries(self, vault_id: int, page: int = 0, limit: Optional[int] = None) -> EntryPage:
        """One page of a vault's entries, newest first."""
        self._require_vault(vault_id)
        limit = limit if limit is not None else self._config.page_size
        check_page(page, limit)
        total = self._store.count_entries(vault_id)
        entries = self._store.list_entries(vault_id, limit=limit, offset=page * limit)
        return EntryPage(entries=entries, total=total, page=page, limit=limit)

    def count_entries(self, vault_id: int) -> int:
        return self._store.count_entries(vault_id)

    def update_entry(self, entry_id: int, update: EntryUpdate) -> Entry:
        """
        Apply the attributes of update that are not None.

        New metadata has orphan keys removed before it is validated.

        Raises:
            EntryNotFound: If the entry doesn't exist
            ValidationFailed: Empty title, or metadata errors
        """
        entry = self._require_entry(entry_id)
        changes: dict[str, Any] = {}
        if update.title is not None:
            changes["title"] = _required_text(update.title, "Title cannot be empty")
        if update.description is not None:
            changes["description"] = update.description
        if update.metadata is not None:
            metadata = self._validator.cleanup_orphan_data(entry.vault_id, update.metadata)
            self._check_metadata(
                self._validator.validate_metadata(entry.vault_id, metadata), entry.vault_id,
            )
            changes["metadata"] = metadata

        updated = self._store.update_entry(entry_id, **changes)
        if updated is None:
            raise EntryNotFound(entry_id)
        logger.info("Updated entry: %s (id=%d)", updated.title, updated.id)
        return updated

    def delete_entry(self, entry_id: int) -> None:
        entry = self._require_entry(entry_id)
        logger.info("Deleting entry: %s (id=%d)", entry.title, entry.id)
        self._store.delete_entry(entry_id)
        self._discard_cover(entry.cover_image_path)

    # -------------------------------------------------------------------------
    # Field definitions
    # -------------------------------------------------------------------------

    def _check_relation_target(self, field_type: FieldType, options: Optional[FieldOptions]) -> None:
        if field_type is FieldType.RELATION and options is not None \
                and options.target_vault_id is not None:
            self._require_vault(options.target_vault_id)

    def create_field(
        self,
        vault_id: int,
        name: str,
        field_type: "FieldType | str",
        options: Optional[FieldOptions] = None,
        required: bool = False,
    ) -> FieldDefinition:
        """
        Add a field to the end of a vault's schema.

        Raises:
            ValidationFailed: Empty or duplicate name, or unknown type
            VaultNotFound: If the vault (or a relation's target vault)
                doesn't exist
        """
        name = _required_text(name, "Field name is required")
        try:
            field_type = FieldType.parse(field_type)
        except ValueError as e:
            raise ValidationFailed(str(e))
        self._require_vault(vault_id)
        if self._store.find_field_by_name(vault_id, name) is not None:
            raise ValidationFailed(f"Field '{name}' already exists in this vault")
        self._check_relation_target(field_type, options)

        field = self._store.insert_field(vault_id, name, field_type, options, required)
        logger.info(
            "Created field: %s (id=%d, type=%s) in vault %d",
            field.name, field.id, field.field_type.value, field.vault_id,
        )
        return field

    def get_field(self, field_id: int) -> FieldDefinition:
        return self._require_field(field_id)

    def list_fields(self, vault_id: int) -> list[FieldDefinition]:
        """A vault's field definitions in display order."""
        self._require_vault(vault_id)
        return self._store.list_fields(vault_id)

    def update_field(self, field_id: int, update: FieldUpdate) -> FieldDefinition:
        """Rename a field, replace its options or change whether it's required."""
        field = self._require_field(field_id)
        changes: dict[str, Any] = {}
        if update.name is not None:
            name = _required_text(update.name, "Field name cannot be empty")
            existing = self._store.find_field_by_name(field.vault_id, name)
            if existing is not None and existing.id != field_id:
                raise ValidationFailed(f"Field '{name}' already exists in this vault")
            changes["name"] = name
        if update.options is not None:
            self._check_relation_target(field.field_type, update.options)
            changes["options"] = update.options
        if update.required is not None:
            changes["required"] = update.required

        updated = self._store.update_field(field_id, **changes)
        if updated is None:
            raise FieldNotFound(field_id)
        logger.info("Updated field: %s (id=%d)", updated.name, updated.id)
        return updated

    def delete_field(self, field_id: int) -> None:
        """
        Delete a field definition.

        Values stored under the field stay in entry metadata as orphan
        data until each entry is next written.
        """
        field = self._require_field(field_id)
        logger.info("Deleting field: %s (id=%d)", field.name, field.id)
        self._store.delete_field(field_id)

    def reorder_fields(self, vault_id: int, field_ids: Sequence[int]) -> list[FieldDefinition]:
        """
        Set display order: each field's position becomes its list index.

        Raises:
            ValidationFailed: If an id isn't a field of this vault, or repeats
        """
        self._require_vault(vault_id)
        owned = {f.id for f in self._store.list_fields(vault_id)}
        if len(set(field_ids)) != len(field_ids):
            raise ValidationFailed("Field order contains duplicate ids")
        for field_id in field_ids:
            if field_id not in owned:
                raise ValidationFailed(
                    f"Field {field_id} does not belong to vault {vault_id}"
                )
        self._store.set_field_positions(
            {field_id: position for position, field_id in enumerate(field_ids)}
        )
        logger.info("Reordered %d field(s) in vault %d", len(field_ids), vault_id)
        return self._store.list_fields(vault_id)

    # -------------------------------------------------------------------------
    # Cover images
    # -------------------------------------------------------------------------

    def set_cover_from_file(self, entry_id: int, path: str | Path) -> Entry:
        """Store a local image file as the entry's cover, replacing any old one."""
        entry = self._require_entry(entry_id)
        relative_path = self._images.save_local_image(entry.vault_id, entry.id, Path(path))
        # Same entry may keep the same stored name (e.g. png replaced by png)
        if entry.cover_image_path != relative_path:
            self._discard_cover(entry.cover_image_path)
        updated = self._store.update_entry(entry_id, cover_image_path=relative_path)
        logger.info("Set cover image for entry %d from file", entry_id)
        return updated

    def set_cover_from_url(self, entry_id: int, url: str) -> Entry:
        """Use a remote image URL as the entry's cover; it is stored as-is."""
        entry = self._require_entry(entry_id)
        url = url.strip()
        if not is_url(url):
            raise ValidationFailed(
                f"Invalid URL '{url}': must start with http:// or https://"
            )
        self._discard_cover(entry.cover_image_path)
        updated = self._store.update_entry(entry_id, cover_image_path=url)
        logger.info("Set cover image for entry %d from URL", entry_id)
        return updated

    def remove_cover(self, entry_id: int) -> Entry:
        entry = self._require_entry(entry_id)
        if not entry.cover_image_path:
            return entry
        self._discard_cover(entry.cover_image_path)
        updated = self._store.update_entry(entry_id, cover_image_path=None)
        logger.info("Removed cover image from entry %d", entry_id)
        return updated

    def get_cover_path(self, entry_id: int) -> str | Path:
        """
        Where to load an entry's cover from: an absolute file path for a
        stored image, or the URL itself.

        Raises:
            ValidationFailed: If the entry has no cover image
        """
        entry = self._require_entry(entry_id)
        if not entry.cover_image_path:
            raise ValidationFailed("Entry has no cover image")
        if is_url(entry.cover_image_path):
            return entry.cover_image_path
        return self._images.get_full_path(entry.cover_image_path)

    def read_cover(self, entry_id: int) -> bytes:
        """
        Bytes of an entry's stored cover image.

        Raises:
            ValidationFailed: If the entry has no cover, or its cover is a URL
            InternalFailure: If the stored file is missing
        """
        entry = self._require_entry(entry_id)
        if not entry.cover_image_path:
            raise ValidationFailed("Entry has no cover image")
        if is_url(entry.cover_image_path):
            raise ValidationFailed(f"Cover image is a URL: {entry.cover_image_path}")
        return self._images.read_image(entry.cover_image_path)

    # -------------------------------------------------------------------------
    # Metadata, search and relations
    # -------------------------------------------------------------------------

    def validate_metadata(self, vault_id: int, metadata_json: Optional[str] = None) -> ValidationResult:
        return self._validator.validate_metadata(vault_id, metadata_json)

    def validate_required_fields(
        self, vault_id: int, metadata_json: Optional[str] = None,
    ) -> ValidationResult:
        return self._validator.validate_required_fields(vault_id, metadata_json)

    def cleanup_orphan_data(self, vault_id: int, metadata_json: str) -> str:
        return self._validator.cleanup_orphan_data(vault_id, metadata_json)

    def search(
        self,
        vault_id: int,
        query: str,
        page: int = 0,
        limit: Optional[int] = None,
    ) -> SearchResults:
        """Full-text prefix search within a vault; see SearchService.search."""
        limit = limit if limit is not None else self._config.page_size
        return self._search.search(vault_id, query, page, limit)

    def resolve_relation(
        self, entry_id: int, vault_id: int, *, require_exists: bool = False,
    ) -> ResolvedRelation:
        return self._relations.resolve_relation(entry_id, vault_id, require_exists=require_exists)

    def resolve_relations_batch(
        self, refs: Iterable["RelationRef | dict[str, Any]"],
    ) -> dict[str, ResolvedRelation]:
        return self._relations.resolve_relations_batch(refs)

    def resolve_entry_relations(self, entry_id: int) -> dict[str, ResolvedRelation]:
        """Resolve every relation value in an entry's metadata."""
        return self._relations.resolve_entry_relations(self._require_entry(entry_id))

    def search_entries_for_picker(
        self,
        vault_id: int,
        query: str = "",
        limit: Optional[int] = None,
    ) -> list[EntryPickerItem]:
        limit = limit if limit is not None else self._config.picker_limit
        return self._relations.search_entries_for_picker(vault_id, query, limit)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the store (if opened here) and detach the ops log."""
        if getattr(self, "_owns_store", False) and self._store is not None:
            self._store.close()
            self._store = None

        # Remove ops log handler to avoid handler accumulation
        if getattr(self, "_ops_log_handler", None):
            logging.getLogger("vaultbox").removeHandler(self._ops_log_handler)
            self._ops_log_handler.close()
            self._ops_log_handler = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - close resources."""
        self.close()
        return False

    def __del__(self):
        """Cleanup on deletion."""
        try:
            self.close()
        except Exception:
            pass  # Suppress errors during garbage collection
