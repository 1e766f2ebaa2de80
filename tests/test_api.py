"""
Tests for VaultManager: CRUD, write-time validation, covers, lifecycle.
"""

import json
import logging

import pytest

from conftest import write_image
from vaultbox.api import VaultManager
from vaultbox.config import StoreConfig
from vaultbox.errors import (
    EntryNotFound,
    FieldNotFound,
    InternalFailure,
    MalformedInput,
    ValidationFailed,
    VaultNotFound,
)
from vaultbox.store import VaultStore
from vaultbox.types import (
    EntryUpdate,
    FieldOptions,
    FieldType,
    FieldUpdate,
    VaultUpdate,
)


class TestVaults:

    def test_create_trims_name(self, manager):
        vault = manager.create_vault("  Books  ", description="To read")
        assert vault.name == "Books"
        assert manager.get_vault(vault.id) == vault

    def test_create_empty_name(self, manager):
        with pytest.raises(ValidationFailed, match="Name is required"):
            manager.create_vault("   ")

    def test_get_missing(self, manager):
        with pytest.raises(VaultNotFound) as exc_info:
            manager.get_vault(8)
        assert exc_info.value.to_dict() == {
            "code": "VAULT_NOT_FOUND", "message": "Vault not found: 8",
        }

    def test_update_partial(self, manager):
        vault = manager.create_vault("Books", icon="book")
        updated = manager.update_vault(vault.id, VaultUpdate(color="#fff"))
        assert updated.name == "Books"
        assert updated.icon == "book"
        assert updated.color == "#fff"

    def test_update_empty_name(self, manager):
        vault = manager.create_vault("Books")
        with pytest.raises(ValidationFailed, match="Name cannot be empty"):
            manager.update_vault(vault.id, VaultUpdate(name=""))

    def test_update_missing(self, manager):
        with pytest.raises(VaultNotFound):
            manager.update_vault(5, VaultUpdate(name="x"))

    def test_delete_removes_everything(self, manager, png_file):
        vault = manager.create_vault("Books")
        entry = manager.create_entry(vault.id, "Dune")
        manager.set_cover_from_file(entry.id, png_file)
        manager.delete_vault(vault.id)
        assert manager.list_vaults() == []
        with pytest.raises(EntryNotFound):
            manager.get_entry(entry.id)
        assert not (manager.store_path / "images" / str(vault.id)).exists()

    def test_delete_missing(self, manager):
        with pytest.raises(VaultNotFound):
            manager.delete_vault(1)


class TestEntries:

    def test_create_and_get(self, seeded, manager):
        books = seeded["books"]
        entry = manager.create_entry(books.id, " Dune ", "Desert planet")
        assert entry.title == "Dune"
        assert manager.get_entry(entry.id) == entry
        assert manager.count_entries(books.id) == 1

    def test_create_empty_title(self, seeded, manager):
        with pytest.raises(ValidationFailed, match="Title is required"):
            manager.create_entry(seeded["books"].id, "")

    def test_create_unknown_vault(self, manager):
        with pytest.raises(VaultNotFound):
            manager.create_entry(404, "Nowhere")

    def test_create_valid_metadata(self, seeded, manager):
        rating, status = seeded["rating"], seeded["status"]
        metadata = json.dumps({str(rating.id): 9, str(status.id): "read"})
        entry = manager.create_entry(seeded["books"].id, "Dune", metadata=metadata)
        assert entry.metadata == metadata

    def test_create_invalid_metadata_lists_errors(self, seeded, manager):
        rating, status = seeded["rating"], seeded["status"]
        metadata = json.dumps({str(rating.id): 11, str(status.id): "lost"})
        with pytest.raises(ValidationFailed) as exc_info:
            manager.create_entry(seeded["books"].id, "Dune", metadata=metadata)
        errors = exc_info.value.errors
        assert "Field 'Rating': value 11 exceeds maximum 10" in errors
        assert any("'lost' is not a valid choice" in e for e in errors)
        assert exc_info.value.to_dict()["code"] == "VALIDATION_ERROR"
        assert manager.count_entries(seeded["books"].id) == 0

    def test_create_missing_required(self, manager):
        vault = manager.create_vault("Movies")
        manager.create_field(vault.id, "Director", FieldType.TEXT, required=True)
        with pytest.raises(ValidationFailed) as exc_info:
            manager.create_entry(vault.id, "Alien")
        assert exc_info.value.errors == ["Field 'Director' is required"]

    def test_create_orphan_warning_logged(self, seeded, manager, caplog):
        with caplog.at_level(logging.WARNING, logger="vaultbox.api"):
            manager.create_entry(seeded["books"].id, "Dune", metadata='{"999": 1}')
        assert "Orphan data detected: field ID 999 no longer exists" in caplog.text

    def test_list_paginates(self, manager):
        vault = manager.create_vault("Lots")
        for i in range(25):
            manager.create_entry(vault.id, f"Entry {i}")
        first = manager.list_entries(vault.id, page=0, limit=10)
        last = manager.list_entries(vault.id, page=2, limit=10)
        assert (len(first.entries), first.total, first.has_more) == (10, 25, True)
        assert (len(last.entries), last.has_more) == (5, False)

    def test_list_default_limit_from_config(self, manager):
        vault = manager.create_vault("Lots")
        for i in range(21):
            manager.create_entry(vault.id, f"Entry {i}")
        page = manager.list_entries(vault.id)
        assert page.limit == manager.config.page_size == 20
        assert page.has_more

    def test_list_unknown_vault(self, manager):
        with pytest.raises(VaultNotFound):
            manager.list_entries(3)

    def test_update_fields(self, seeded, manager):
        entry = manager.create_entry(seeded["books"].id, "Dune")
        updated = manager.update_entry(entry.id, EntryUpdate(title="Dune Messiah", description="Sequel"))
        assert updated.title == "Dune Messiah"
        assert updated.description == "Sequel"

    def test_update_empty_title(self, seeded, manager):
        entry = manager.create_entry(seeded["books"].id, "Dune")
        with pytest.raises(ValidationFailed, match="Title cannot be empty"):
            manager.update_entry(entry.id, EntryUpdate(title="  "))

    def test_update_cleans_orphans(self, seeded, manager):
        rating = seeded["rating"]
        entry = manager.create_entry(seeded["books"].id, "Dune")
        updated = manager.update_entry(
            entry.id, EntryUpdate(metadata=json.dumps({str(rating.id): 8, "999": "stale"})),
        )
        assert json.loads(updated.metadata) == {str(rating.id): 8}

    def test_update_after_field_deleted(self, seeded, manager):
        """Values of a deleted field stay until the entry is next written."""
        rating, status = seeded["rating"], seeded["status"]
        metadata = json.dumps({str(rating.id): 7, str(status.id): "read"})
        entry = manager.create_entry(seeded["books"].id, "Dune", metadata=metadata)
        manager.delete_field(status.id)
        assert manager.get_entry(entry.id).metadata == metadata
        updated = manager.update_entry(entry.id, EntryUpdate(metadata=metadata))
        assert json.loads(updated.metadata) == {str(rating.id): 7}

    def test_update_invalid_metadata(self, seeded, manager):
        entry = manager.create_entry(seeded["books"].id, "Dune")
        with pytest.raises(ValidationFailed):
            manager.update_entry(
                entry.id, EntryUpdate(metadata=json.dumps({str(seeded["rating"].id): -3})),
            )
        assert manager.get_entry(entry.id).metadata is None

    def test_update_missing(self, manager):
        with pytest.raises(EntryNotFound):
            manager.update_entry(9, EntryUpdate(title="x"))

    def test_delete(self, seeded, manager):
        entry = manager.create_entry(seeded["books"].id, "Dune")
        manager.delete_entry(entry.id)
        with pytest.raises(EntryNotFound):
            manager.get_entry(entry.id)

    def test_delete_removes_cover(self, seeded, manager, png_file):
        entry = manager.create_entry(seeded["books"].id, "Dune")
        entry = manager.set_cover_from_file(entry.id, png_file)
        cover = manager.get_cover_path(entry.id)
        manager.delete_entry(entry.id)
        assert not cover.exists()

    def test_delete_with_missing_cover_file(self, seeded, manager, png_file, caplog):
        entry = manager.create_entry(seeded["books"].id, "Dune")
        manager.set_cover_from_file(entry.id, png_file)
        manager.get_cover_path(entry.id).unlink()
        with caplog.at_level(logging.WARNING):
            manager.delete_entry(entry.id)
        assert "Image file not found" in caplog.text


class TestFields:

    def test_create_appends(self, manager):
        vault = manager.create_vault("V")
        a = manager.create_field(vault.id, "A", "text")
        b = manager.create_field(vault.id, " B ", FieldType.NUMBER)
        assert b.name == "B"
        assert [f.id for f in manager.list_fields(vault.id)] == [a.id, b.id]

    def test_duplicate_name(self, manager):
        vault = manager.create_vault("V")
        manager.create_field(vault.id, "Rating", "number")
        with pytest.raises(ValidationFailed, match="Field 'Rating' already exists in this vault"):
            manager.create_field(vault.id, "Rating", "text")

    def test_same_name_other_vault(self, manager):
        a = manager.create_vault("A")
        b = manager.create_vault("B")
        manager.create_field(a.id, "Rating", "number")
        assert manager.create_field(b.id, "Rating", "number").vault_id == b.id

    def test_unknown_type(self, manager):
        vault = manager.create_vault("V")
        with pytest.raises(ValidationFailed, match="Unknown field type"):
            manager.create_field(vault.id, "X", "color")

    def test_empty_name(self, manager):
        vault = manager.create_vault("V")
        with pytest.raises(ValidationFailed, match="Field name is required"):
            manager.create_field(vault.id, "", "text")

    def test_relation_target_must_exist(self, manager):
        vault = manager.create_vault("V")
        with pytest.raises(VaultNotFound):
            manager.create_field(
                vault.id, "Ref", FieldType.RELATION, FieldOptions(target_vault_id=77),
            )

    def test_update(self, seeded, manager):
        rating = seeded["rating"]
        updated = manager.update_field(
            rating.id, FieldUpdate(name="Score", options=FieldOptions(min=1, max=5), required=True),
        )
        assert updated.name == "Score"
        assert updated.options == FieldOptions(min=1, max=5)
        assert updated.required

    def test_rename_keeps_values(self, seeded, manager):
        rating = seeded["rating"]
        entry = manager.create_entry(
            seeded["books"].id, "Dune", metadata=json.dumps({str(rating.id): 9}),
        )
        manager.update_field(rating.id, FieldUpdate(name="Score"))
        assert manager.validate_metadata(seeded["books"].id, entry.metadata).warnings == []

    def test_rename_to_existing(self, seeded, manager):
        with pytest.raises(ValidationFailed, match="already exists"):
            manager.update_field(seeded["rating"].id, FieldUpdate(name="Status"))

    def test_rename_to_same_name(self, seeded, manager):
        assert manager.update_field(seeded["rating"].id, FieldUpdate(name="Rating")).name == "Rating"

    def test_get_missing(self, manager):
        with pytest.raises(FieldNotFound, match="Field definition not found: 3"):
            manager.get_field(3)

    def test_delete(self, seeded, manager):
        manager.delete_field(seeded["status"].id)
        assert [f.name for f in manager.list_fields(seeded["books"].id)] == ["Rating", "Author"]

    def test_reorder(self, seeded, manager):
        rating, status, author = seeded["rating"], seeded["status"], seeded["author"]
        fields = manager.reorder_fields(seeded["books"].id, [author.id, rating.id, status.id])
        assert [f.name for f in fields] == ["Author", "Rating", "Status"]
        assert [f.position for f in fields] == [0, 1, 2]

    def test_reorder_foreign_field(self, seeded, manager):
        other = manager.create_vault("Other")
        stranger = manager.create_field(other.id, "X", "text")
        with pytest.raises(ValidationFailed, match="does not belong to vault"):
            manager.reorder_fields(seeded["books"].id, [seeded["rating"].id, stranger.id])

    def test_reorder_duplicates(self, seeded, manager):
        rating = seeded["rating"]
        with pytest.raises(ValidationFailed, match="duplicate"):
            manager.reorder_fields(seeded["books"].id, [rating.id, rating.id])


class TestCovers:

    @pytest.fixture
    def entry(self, seeded, manager):
        return manager.create_entry(seeded["books"].id, "Dune")

    def test_from_file(self, manager, entry, png_file):
        updated = manager.set_cover_from_file(entry.id, png_file)
        assert updated.cover_image_path == f"{entry.vault_id}/{entry.id}.png"
        path = manager.get_cover_path(entry.id)
        assert path.is_file()
        assert path.is_absolute()

    def test_replace_with_other_format_deletes_old(self, manager, entry, png_file, tmp_path):
        manager.set_cover_from_file(entry.id, png_file)
        old = manager.get_cover_path(entry.id)
        jpeg = write_image(tmp_path / "new.jpg", "JPEG")
        updated = manager.set_cover_from_file(entry.id, jpeg)
        assert updated.cover_image_path.endswith(".jpg")
        assert not old.exists()

    def test_from_url(self, manager, entry, png_file):
        manager.set_cover_from_file(entry.id, png_file)
        old = manager.get_cover_path(entry.id)
        updated = manager.set_cover_from_url(entry.id, "https://example.com/dune.jpg")
        assert updated.cover_image_path == "https://example.com/dune.jpg"
        assert manager.get_cover_path(entry.id) == "https://example.com/dune.jpg"
        assert not old.exists()

    def test_url_must_be_http(self, manager, entry):
        with pytest.raises(ValidationFailed, match="must start with http"):
            manager.set_cover_from_url(entry.id, "file:///etc/passwd")

    def test_remove(self, manager, entry, png_file):
        manager.set_cover_from_file(entry.id, png_file)
        old = manager.get_cover_path(entry.id)
        assert manager.remove_cover(entry.id).cover_image_path is None
        assert not old.exists()

    def test_remove_without_cover(self, manager, entry):
        assert manager.remove_cover(entry.id).cover_image_path is None

    def test_no_cover(self, manager, entry):
        with pytest.raises(ValidationFailed, match="Entry has no cover image"):
            manager.get_cover_path(entry.id)

    def test_invalid_image_keeps_old_cover(self, manager, entry, png_file, tmp_path):
        manager.set_cover_from_file(entry.id, png_file)
        bogus = tmp_path / "bogus.png"
        bogus.write_bytes(b"not an image")
        with pytest.raises(ValidationFailed):
            manager.set_cover_from_file(entry.id, bogus)
        assert manager.get_cover_path(entry.id).is_file()

    def test_read_cover(self, manager, entry, png_file):
        manager.set_cover_from_file(entry.id, png_file)
        assert manager.read_cover(entry.id) == png_file.read_bytes()

    def test_read_url_cover(self, manager, entry):
        manager.set_cover_from_url(entry.id, "https://example.com/dune.jpg")
        with pytest.raises(ValidationFailed, match="Cover image is a URL"):
            manager.read_cover(entry.id)

    def test_read_cover_file_gone(self, manager, entry, png_file):
        manager.set_cover_from_file(entry.id, png_file)
        manager.get_cover_path(entry.id).unlink()
        with pytest.raises(InternalFailure, match="Cover image file not found"):
            manager.read_cover(entry.id)

    def test_read_without_cover(self, manager, entry):
        with pytest.raises(ValidationFailed, match="Entry has no cover image"):
            manager.read_cover(entry.id)

    def test_unknown_entry(self, manager, png_file):
        with pytest.raises(EntryNotFound):
            manager.set_cover_from_file(55, png_file)


class TestCoreOperations:
    """Search, validation and relations through the manager."""

    def test_search(self, seeded, manager):
        books = seeded["books"]
        for title in ("Application Settings", "Apple Products", "Banana Recipes"):
            manager.create_entry(books.id, title)
        results = manager.search(books.id, "app")
        assert results.total == 2
        assert results.limit == manager.config.page_size

    def test_cleanup(self, seeded, manager):
        rating = seeded["rating"]
        cleaned = manager.cleanup_orphan_data(seeded["books"].id, json.dumps({str(rating.id): 1, "0": 2}))
        assert json.loads(cleaned) == {str(rating.id): 1}

    def test_validate_required(self, manager):
        vault = manager.create_vault("V")
        manager.create_field(vault.id, "Must", "text", required=True)
        assert not manager.validate_required_fields(vault.id, "{}").is_valid

    def test_resolve_entry_relations(self, seeded, manager):
        herbert, author = seeded["herbert"], seeded["author"]
        metadata = json.dumps({str(author.id): {"entry_id": herbert.id, "vault_id": herbert.vault_id}})
        book = manager.create_entry(seeded["books"].id, "Dune", metadata=metadata)
        resolved = manager.resolve_entry_relations(book.id)
        rel = resolved[f"{herbert.id}:{herbert.vault_id}"]
        assert rel.title == "Frank Herbert"
        assert rel.vault_name == "Authors"

        manager.delete_entry(herbert.id)
        rel = manager.resolve_entry_relations(book.id)[f"{herbert.id}:{herbert.vault_id}"]
        assert not rel.exists
        assert rel.title == "[Deleted]"

    def test_relation_to_wrong_vault_rejected(self, seeded, manager):
        author = seeded["author"]
        metadata = json.dumps({str(author.id): {"entry_id": 1, "vault_id": seeded["books"].id}})
        with pytest.raises(ValidationFailed, match="does not match target vault"):
            manager.create_entry(seeded["books"].id, "Dune", metadata=metadata)

    def test_resolve_batch_malformed(self, manager):
        with pytest.raises(MalformedInput):
            manager.resolve_relations_batch([{"entry_id": None, "vault_id": 1}])

    def test_picker(self, seeded, manager):
        items = manager.search_entries_for_picker(seeded["authors"].id, "herb")
        assert [i.title for i in items] == ["Frank Herbert"]
        assert items[0].subtitle == "American science fiction author"

    def test_resolve_entry_unknown(self, manager):
        with pytest.raises(EntryNotFound):
            manager.resolve_entry_relations(31)


class TestLifecycle:

    def test_creates_config_and_database(self, tmp_path):
        with VaultManager(tmp_path / "new") as vm:
            vm.create_vault("V")
        assert (tmp_path / "new" / "vaultbox.toml").exists()
        assert (tmp_path / "new" / "vaultbox.db").exists()

    def test_ops_log_written(self, tmp_path):
        with VaultManager(tmp_path) as vm:
            vm.create_vault("Logged Vault")
        assert "Created vault: Logged Vault" in (tmp_path / "vaultbox-ops.log").read_text()

    def test_close_detaches_ops_log(self, tmp_path):
        vaultbox_logger = logging.getLogger("vaultbox")
        before = list(vaultbox_logger.handlers)
        vm = VaultManager(tmp_path)
        assert len(vaultbox_logger.handlers) == len(before) + 1
        vm.close()
        assert vaultbox_logger.handlers == before

    def test_env_store_path(self, tmp_path, monkeypatch):
        monkeypatch.setenv("VAULTBOX_STORE_PATH", str(tmp_path / "env"))
        with VaultManager() as vm:
            assert vm.store_path == (tmp_path / "env").resolve()

    def test_injected_store(self, tmp_path):
        config = StoreConfig(path=tmp_path)
        store = VaultStore(":memory:")
        vm = VaultManager(config=config, store=store)
        vault = vm.create_vault("Injected")
        vm.close()
        # Injected store is left open for its owner
        assert store.get_vault(vault.id).name == "Injected"
        assert not (tmp_path / "vaultbox.db").exists()
        store.close()

    def test_data_survives_reopen(self, tmp_path):
        with VaultManager(tmp_path) as vm:
            vault = vm.create_vault("Persistent")
        with VaultManager(tmp_path) as vm:
            assert vm.get_vault(vault.id).name == "Persistent"
