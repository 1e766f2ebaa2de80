"""
Relation fields: references from an entry to an entry in another vault.

References are weak. Nothing stops the target from being deleted, so a
reference is resolved when it is displayed: a target that is gone, or that
isn't in the vault the reference names, shows as "[Deleted]".
"""

import json
import logging
from typing import Any, Iterable, Optional

from .errors import EntryNotFound, MalformedInput, VaultNotFound
from .protocol import VaultStoreProtocol
from .types import (
    Entry,
    EntryPickerItem,
    FieldDefinition,
    FieldType,
    RelationRef,
    ResolvedRelation,
)

logger = logging.getLogger(__name__)

PICKER_MIN_LIMIT = 1
PICKER_MAX_LIMIT = 100


def _resolved(ref: RelationRef, entry: Optional[Entry], vault_name: Optional[str]) -> ResolvedRelation:
    if entry is None or entry.vault_id != ref.vault_id:
        return ResolvedRelation.deleted(ref.entry_id, ref.vault_id)
    return ResolvedRelation(
        entry_id=ref.entry_id,
        vault_id=ref.vault_id,
        title=entry.title,
        exists=True,
        vault_name=vault_name,
        cover_image_path=entry.cover_image_path,
    )


def collect_relation_refs(
    fields: list[FieldDefinition],
    metadata_json: Optional[str],
) -> list[RelationRef]:
    """
    Relation values stored in an entry's metadata, in field order.

    Values that aren't well-formed references are skipped; validation
    reports those when the entry is written.
    """
    if not metadata_json:
        return []
    try:
        metadata = json.loads(metadata_json)
    except ValueError:
        return []
    if not isinstance(metadata, dict):
        return []

    refs = []
    for field in fields:
        if field.field_type is not FieldType.RELATION:
            continue
        value = metadata.get(field.key)
        if value is None:
            continue
        try:
            refs.append(RelationRef.from_value(value))
        except ValueError:
            logger.debug("Skipping malformed relation value in field %d: %r", field.id, value)
    return refs


class RelationResolver:
    """Resolves relation references and finds candidate targets."""

    def __init__(self, store: VaultStoreProtocol):
        self._store = store

    def resolve_relation(
        self,
        entry_id: int,
        vault_id: int,
        *,
        require_exists: bool = False,
    ) -> ResolvedRelation:
        """
        Resolve a single reference.

        Args:
            entry_id: Referenced entry
            vault_id: Vault the reference says the entry is in
            require_exists: Raise instead of returning a "[Deleted]" result

        Returns:
            ResolvedRelation with ``exists=False`` if the target is missing
            or belongs to a different vault

        Raises:
            EntryNotFound: Only with require_exists, for a missing target
        """
        ref = RelationRef(entry_id=entry_id, vault_id=vault_id)
        entry = self._store.get_entry(entry_id)
        if entry is None or entry.vault_id != vault_id:
            if require_exists:
                raise EntryNotFound(entry_id)
            return ResolvedRelation.deleted(entry_id, vault_id)

        vault = self._store.get_vault(vault_id)
        return _resolved(ref, entry, vault.name if vault is not None else None)

    def resolve_relations_batch(
        self,
        refs: Iterable["RelationRef | dict[str, Any]"],
    ) -> dict[str, ResolvedRelation]:
        """
        Resolve many references with one entry lookup and one vault lookup.

        Duplicate references collapse to a single result.

        Returns:
            Dict keyed by ``"<entry_id>:<vault_id>"``

        Raises:
            MalformedInput: If a reference lacks integer ids
        """
        try:
            refs = [RelationRef.from_value(r) for r in refs]
        except ValueError as e:
            raise MalformedInput(str(e)) from e
        if not refs:
            return {}

        entry_ids = list(dict.fromkeys(r.entry_id for r in refs))
        vault_ids = list(dict.fromkeys(r.vault_id for r in refs))
        entries = self._store.get_entries_many(entry_ids)
        vaults = self._store.get_vaults_many(vault_ids)

        results: dict[str, ResolvedRelation] = {}
        for ref in refs:
            if ref.key in results:
                continue
            vault = vaults.get(ref.vault_id)
            results[ref.key] = _resolved(
                ref, entries.get(ref.entry_id), vault.name if vault is not None else None,
            )
        return results

    def resolve_entry_relations(self, entry: Entry) -> dict[str, ResolvedRelation]:
        """Resolve every relation value stored in an entry's metadata."""
        fields = self._store.list_fields(entry.vault_id)
        return self.resolve_relations_batch(collect_relation_refs(fields, entry.metadata))

    def search_entries_for_picker(
        self,
        vault_id: int,
        query: str = "",
        limit: int = 20,
    ) -> list[EntryPickerItem]:
        """
        Find entries in a vault to offer as relation targets.

        Matches titles containing the query (case-insensitive); an empty
        query lists the most recently updated entries.

        Args:
            vault_id: Vault to pick from
            query: Title substring
            limit: Maximum results, clamped to 1..100

        Raises:
            VaultNotFound: If the vault doesn't exist
        """
        if self._store.get_vault(vault_id) is None:
            raise VaultNotFound(vault_id)

        limit = max(PICKER_MIN_LIMIT, min(PICKER_MAX_LIMIT, limit))
        entries = self._store.find_entries_by_title(vault_id, query.strip(), limit)
        return [EntryPickerItem.from_entry(e) for e in entries]
