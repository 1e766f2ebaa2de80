"""
Shared pytest fixtures for vaultbox tests.

Provides an in-memory field provider for the validation engine and real
SQLite stores in temporary directories for everything else.
"""

from pathlib import Path
from typing import Optional

import pytest

from vaultbox.api import VaultManager
from vaultbox.store import VaultStore
from vaultbox.types import FieldDefinition, FieldOptions, FieldType


class InMemoryFieldProvider:
    """
    Field-definition lookup backed by a dict.

    Counts calls so tests can check how often the schema is read.
    """

    def __init__(self, fields: Optional[list[FieldDefinition]] = None):
        self._fields: dict[int, list[FieldDefinition]] = {}
        self.list_calls = 0
        for f in fields or []:
            self.add(f)

    def add(self, field: FieldDefinition) -> FieldDefinition:
        self._fields.setdefault(field.vault_id, []).append(field)
        return field

    def remove(self, field_id: int) -> None:
        for fields in self._fields.values():
            fields[:] = [f for f in fields if f.id != field_id]

    def list_fields(self, vault_id: int) -> list[FieldDefinition]:
        self.list_calls += 1
        return sorted(self._fields.get(vault_id, []), key=lambda f: (f.position, f.id))


def make_field(
    id: int,
    name: str,
    field_type: FieldType = FieldType.TEXT,
    *,
    vault_id: int = 1,
    required: bool = False,
    **options,
) -> FieldDefinition:
    """Build a FieldDefinition; keyword options become FieldOptions."""
    return FieldDefinition(
        id=id,
        vault_id=vault_id,
        name=name,
        field_type=field_type,
        options=FieldOptions(**options) if options else None,
        position=id,
        required=required,
    )


@pytest.fixture
def field_provider():
    """Create an empty InMemoryFieldProvider."""
    return InMemoryFieldProvider()


@pytest.fixture
def store(tmp_path):
    """Create a VaultStore in a temporary directory."""
    s = VaultStore(tmp_path / "vaultbox.db")
    yield s
    s.close()


@pytest.fixture
def manager(tmp_path):
    """Create a VaultManager with its store under tmp_path."""
    vm = VaultManager(tmp_path)
    yield vm
    vm.close()


@pytest.fixture
def seeded(manager):
    """
    Two vaults: "Books" (with a few fields) and "Authors" (relation target).

    Returns a dict of the created records by short name.
    """
    authors = manager.create_vault("Authors")
    books = manager.create_vault("Books", description="Things to read")
    herbert = manager.create_entry(authors.id, "Frank Herbert", "American science fiction author")
    le_guin = manager.create_entry(authors.id, "Ursula K. Le Guin")
    rating = manager.create_field(
        books.id, "Rating", FieldType.NUMBER, FieldOptions(min=0, max=10),
    )
    status = manager.create_field(
        books.id, "Status", FieldType.SELECT, FieldOptions(choices=["unread", "reading", "read"]),
    )
    author = manager.create_field(
        books.id, "Author", FieldType.RELATION, FieldOptions(target_vault_id=authors.id),
    )
    return {
        "authors": authors,
        "books": books,
        "herbert": herbert,
        "le_guin": le_guin,
        "rating": rating,
        "status": status,
        "author": author,
    }


def write_image(path: Path, fmt: str = "PNG", size: tuple[int, int] = (4, 4)) -> Path:
    """Write a small solid-color image with Pillow."""
    from PIL import Image

    img = Image.new("RGB", size, (200, 30, 30))
    img.save(path, format=fmt)
    return path


@pytest.fixture
def png_file(tmp_path):
    """A tiny PNG image outside the store."""
    return write_image(tmp_path / "cover.png")
