"""
Data types for vault collections.

Vaults own entries and field definitions. Entry metadata is a JSON object
keyed by the stringified field-definition id, never by field name, so a
renamed field keeps its values and a removed field leaves orphan keys
behind until the next write cleans them up.
"""

import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from .errors import ValidationFailed


# Title shown for a relation whose target no longer exists
DELETED_TITLE = "[Deleted]"

# Picker subtitles are cut to this many characters
SUBTITLE_MAX_LENGTH = 100

_URL_PREFIXES = ("http://", "https://")

# Metadata keys are decimal field ids with an optional sign; no whitespace
_FIELD_ID_RE = re.compile(r'[+-]?[0-9]+')


def utc_now() -> str:
    """Current UTC timestamp in canonical format: YYYY-MM-DD HH:MM:SS.

    All timestamps in vaultbox are UTC, stored without timezone suffix.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def is_url(value: str) -> bool:
    """True if the value is an absolute http(s) URL rather than a local path."""
    return value.startswith(_URL_PREFIXES)


def parse_field_id(key: str) -> Optional[int]:
    """Parse a metadata key as a field-definition id.

    Returns None for anything that isn't a plain decimal integer.
    """
    if not _FIELD_ID_RE.fullmatch(key):
        return None
    return int(key)


def _is_integer(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_finite_number(value: Any) -> bool:
    return (isinstance(value, (int, float)) and not isinstance(value, bool)
            and math.isfinite(value))


def _is_length(value: Any) -> bool:
    return _is_integer(value) and value >= 0


def _is_string_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(v, str) for v in value)


# ---------------------------------------------------------------------------
# Field schema model
# ---------------------------------------------------------------------------


class FieldType(str, Enum):
    """Supported field types."""
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    URL = "url"
    BOOLEAN = "boolean"
    SELECT = "select"
    RELATION = "relation"

    @classmethod
    def parse(cls, value: "str | FieldType") -> "FieldType":
        """Parse a field type name, raising ValueError if unknown."""
        if isinstance(value, FieldType):
            return value
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid = ", ".join(t.value for t in cls)
            raise ValueError(f"Unknown field type {value!r} (expected one of: {valid})")


# Stored options use camelCase keys; snake_case is accepted on input
_OPTION_KEYS = {
    "max_length": "maxLength",
    "min": "min",
    "max": "max",
    "choices": "choices",
    "target_vault_id": "targetVaultId",
    "display_fields": "displayFields",
}

# Value check and description per option
_OPTION_CHECKS: dict[str, tuple[Callable[[Any], bool], str]] = {
    "max_length": (_is_length, "a non-negative integer"),
    "min": (_is_finite_number, "a number"),
    "max": (_is_finite_number, "a number"),
    "choices": (_is_string_list, "a list of strings"),
    "target_vault_id": (_is_integer, "an integer"),
    "display_fields": (_is_string_list, "a list of strings"),
}


def _option_problems(values: dict[str, Any]) -> list[str]:
    problems = []
    for attr, (check, expected) in _OPTION_CHECKS.items():
        value = values.get(attr)
        if value is not None and not check(value):
            problems.append(f"Option '{_OPTION_KEYS[attr]}' must be {expected}, got {value!r}")
    return problems


@dataclass(frozen=True)
class FieldOptions:
    """
    Type-specific constraints for a field definition.

    All attributes are optional; which ones apply depends on the field type:
        max_length: text
        min, max: number (inclusive bounds)
        choices: select
        target_vault_id, display_fields: relation

    Mistyped values raise ValidationFailed on construction.
    """
    max_length: Optional[int] = None
    min: Optional[float] = None
    max: Optional[float] = None
    choices: Optional[list[str]] = None
    target_vault_id: Optional[int] = None
    display_fields: Optional[list[str]] = None

    def __post_init__(self):
        problems = _option_problems(vars(self))
        if problems:
            raise ValidationFailed("; ".join(problems), problems)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the stored (camelCase) form, omitting unset options."""
        return {
            stored: getattr(self, attr)
            for attr, stored in _OPTION_KEYS.items()
            if getattr(self, attr) is not None
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FieldOptions":
        """
        Build options from a dict with camelCase or snake_case keys.

        List items are stringified. Values of the wrong type are dropped,
        so stored options never make a field unusable.
        """
        kwargs = {}
        for attr, stored in _OPTION_KEYS.items():
            if stored in data:
                kwargs[attr] = data[stored]
            elif attr in data:
                kwargs[attr] = data[attr]
        for attr in ("choices", "display_fields"):
            if isinstance(kwargs.get(attr), list):
                kwargs[attr] = [str(v) for v in kwargs[attr]]
        for attr, (check, _) in _OPTION_CHECKS.items():
            if kwargs.get(attr) is not None and not check(kwargs[attr]):
                del kwargs[attr]
        return cls(**kwargs)

    def is_empty(self) -> bool:
        return not self.to_dict()


@dataclass(frozen=True)
class Vault:
    """A user-defined collection with its own field schema."""
    id: int
    name: str
    description: Optional[str] = None
    icon: Optional[str] = None
    color: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "color": self.color,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class Entry:
    """
    An item belonging to exactly one vault.

    Attributes:
        metadata: Raw JSON text keyed by field-definition id, or None
        cover_image_path: Relative path in image storage, or an http(s) URL
    """
    id: int
    vault_id: int
    title: str
    description: Optional[str] = None
    metadata: Optional[str] = None
    cover_image_path: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "vault_id": self.vault_id,
            "title": self.title,
            "description": self.description,
            "metadata": self.metadata,
            "cover_image_path": self.cover_image_path,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def __str__(self) -> str:
        return f"{self.id}: {self.title}"


@dataclass(frozen=True)
class FieldDefinition:
    """A named, typed, ordered attribute of a vault's schema."""
    id: int
    vault_id: int
    name: str
    field_type: FieldType
    options: Optional[FieldOptions] = None
    position: int = 0
    required: bool = False
    created_at: str = ""
    updated_at: str = ""

    @property
    def key(self) -> str:
        """The metadata key holding this field's value."""
        return str(self.id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "vault_id": self.vault_id,
            "name": self.name,
            "field_type": self.field_type.value,
            "options": self.options.to_dict() if self.options is not None else None,
            "position": self.position,
            "required": self.required,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


# ---------------------------------------------------------------------------
# Partial updates: only attributes that are not None are changed
# ---------------------------------------------------------------------------


@dataclass
class VaultUpdate:
    name: Optional[str] = None
    description: Optional[str] = None
    icon: Optional[str] = None
    color: Optional[str] = None


@dataclass
class EntryUpdate:
    title: Optional[str] = None
    description: Optional[str] = None
    metadata: Optional[str] = None


@dataclass
class FieldUpdate:
    name: Optional[str] = None
    options: Optional[FieldOptions] = None
    required: Optional[bool] = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class ValidationResult:
    """
    Outcome of validating entry metadata against a vault's fields.

    Errors make the metadata invalid; warnings (orphan keys, keys that
    aren't field ids) are advisory only.
    """
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def add_error(self, error: str) -> None:
        self.errors.append(error)

    def add_warning(self, warning: str) -> None:
        self.warnings.append(warning)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


def has_more_pages(page: int, limit: int, total: int) -> bool:
    """True if rows exist beyond the given zero-based page."""
    return (page + 1) * limit < total


@dataclass
class EntryPage:
    """One page of entries listed newest-first."""
    entries: list[Entry]
    total: int
    page: int
    limit: int

    @property
    def has_more(self) -> bool:
        return has_more_pages(self.page, self.limit, self.total)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entries": [e.to_dict() for e in self.entries],
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
            "has_more": self.has_more,
        }


@dataclass
class SearchResults(EntryPage):
    """A page of full-text search matches, with the trimmed query."""
    query: str = ""

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["query"] = self.query
        return d


# ---------------------------------------------------------------------------
# Relations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RelationRef:
    """A reference to an entry in a (possibly different) vault."""
    entry_id: int
    vault_id: int

    @property
    def key(self) -> str:
        """Batch result key: ``"<entry_id>:<vault_id>"``."""
        return f"{self.entry_id}:{self.vault_id}"

    @classmethod
    def from_value(cls, value: "RelationRef | dict[str, Any]") -> "RelationRef":
        """Coerce a stored relation value (or an existing ref) to a RelationRef.

        Raises ValueError if the ids are missing or not integers.
        """
        if isinstance(value, RelationRef):
            return value
        if not isinstance(value, dict):
            raise ValueError(f"Relation reference must be an object: {value!r}")
        entry_id = value.get("entry_id")
        vault_id = value.get("vault_id")
        if not _is_integer(entry_id) or not _is_integer(vault_id):
            raise ValueError(f"Relation reference needs integer entry_id and vault_id: {value!r}")
        return cls(entry_id=entry_id, vault_id=vault_id)

    def to_dict(self) -> dict[str, int]:
        return {"entry_id": self.entry_id, "vault_id": self.vault_id}


@dataclass(frozen=True)
class ResolvedRelation:
    """
    Display-ready result of looking up a relation reference.

    A target that is missing, or that now lives in a different vault than
    the reference says, resolves with ``exists=False`` and the title
    ``"[Deleted]"``.
    """
    entry_id: int
    vault_id: int
    title: str
    exists: bool
    vault_name: Optional[str] = None
    cover_image_path: Optional[str] = None

    @classmethod
    def deleted(cls, entry_id: int, vault_id: int) -> "ResolvedRelation":
        return cls(entry_id=entry_id, vault_id=vault_id, title=DELETED_TITLE, exists=False)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "entry_id": self.entry_id,
            "vault_id": self.vault_id,
            "title": self.title,
            "exists": self.exists,
        }
        if self.vault_name is not None:
            d["vault_name"] = self.vault_name
        if self.cover_image_path is not None:
            d["cover_image_path"] = self.cover_image_path
        return d


def make_subtitle(description: Optional[str]) -> Optional[str]:
    """Short subtitle from an entry description for picker display."""
    if description is None:
        return None
    text = description.strip()
    if not text:
        return None
    if len(text) > SUBTITLE_MAX_LENGTH:
        return text[:SUBTITLE_MAX_LENGTH] + "..."
    return text


@dataclass(frozen=True)
class EntryPickerItem:
    """Minimal entry summary for choosing a relation target."""
    id: int
    vault_id: int
    title: str
    subtitle: Optional[str] = None
    thumbnail: Optional[str] = None

    @classmethod
    def from_entry(cls, entry: Entry) -> "EntryPickerItem":
        return cls(
            id=entry.id,
            vault_id=entry.vault_id,
            title=entry.title,
            subtitle=make_subtitle(entry.description),
            thumbnail=entry.cover_image_path,
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"id": self.id, "vault_id": self.vault_id, "title": self.title}
        if self.subtitle is not None:
            d["subtitle"] = self.subtitle
        if self.thumbnail is not None:
            d["thumbnail"] = self.thumbnail
        return d
