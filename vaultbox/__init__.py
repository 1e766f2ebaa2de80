"""
vaultbox: personal collections of entries with custom fields.

Example:
    from vaultbox import VaultManager, FieldType

    with VaultManager("~/collections") as vm:
        books = vm.create_vault("Books")
        vm.create_field(books.id, "Author", FieldType.TEXT)
        vm.search(books.id, "dune")
"""

from .api import VaultManager
from .errors import (
    EntryNotFound,
    FieldNotFound,
    InternalFailure,
    MalformedInput,
    NotFound,
    PersistenceFailure,
    ValidationFailed,
    VaultboxError,
    VaultNotFound,
)
from .metadata import MetadataValidator
from .relations import RelationResolver
from .search import SearchService
from .store import VaultStore
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
)

__all__ = [
    "VaultManager",
    "VaultStore",
    "MetadataValidator",
    "SearchService",
    "RelationResolver",
    "Vault",
    "Entry",
    "FieldDefinition",
    "FieldOptions",
    "FieldType",
    "VaultUpdate",
    "EntryUpdate",
    "FieldUpdate",
    "ValidationResult",
    "EntryPage",
    "SearchResults",
    "RelationRef",
    "ResolvedRelation",
    "EntryPickerItem",
    "VaultboxError",
    "NotFound",
    "VaultNotFound",
    "EntryNotFound",
    "FieldNotFound",
    "ValidationFailed",
    "MalformedInput",
    "PersistenceFailure",
    "InternalFailure",
]
