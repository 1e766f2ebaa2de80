"""
Full-text search over entry titles and descriptions.

Queries are turned into FTS5 prefix expressions: each whitespace-separated
token becomes a quoted prefix term, so every token must match the start of
some indexed word. Quoting each token (with embedded quotes doubled) keeps
user text from being read as FTS5 syntax.
"""

import logging

from .errors import ValidationFailed, VaultNotFound
from .protocol import VaultStoreProtocol
from .types import SearchResults

logger = logging.getLogger(__name__)


def build_fts_query(query: str) -> str:
    r'''
    Build an FTS5 match expression with prefix matching.

    Examples:
        >>> build_fts_query('hello world')
        '"hello"* "world"*'
        >>> build_fts_query('say "hi"')
        '"say"* """hi"""*'
    '''
    return " ".join(
        '"{}"*'.format(word.replace('"', '""'))
        for word in query.split()
    )


def check_page(page: int, limit: int) -> None:
    """Reject pagination values that can't address a page."""
    if page < 0:
        raise ValidationFailed(f"Page must be zero or greater: {page}")
    if limit <= 0:
        raise ValidationFailed(f"Limit must be greater than zero: {limit}")


class SearchService:
    """Paginated full-text search within a vault."""

    def __init__(self, store: VaultStoreProtocol):
        self._store = store

    def search(
        self,
        vault_id: int,
        query: str,
        page: int = 0,
        limit: int = 20,
    ) -> SearchResults:
        """
        Search entries in a vault, newest first.

        An empty (or whitespace-only) query returns no results rather than
        scanning the whole index.

        Args:
            vault_id: Vault to search
            query: Free text; every token must prefix-match
            page: Zero-based page number
            limit: Page size

        Returns:
            SearchResults with the trimmed query and total match count

        Raises:
            VaultNotFound: If the vault doesn't exist
            ValidationFailed: If page or limit is out of range
        """
        if self._store.get_vault(vault_id) is None:
            raise VaultNotFound(vault_id)
        check_page(page, limit)

        query = query.strip()
        if not query:
            return SearchResults(entries=[], total=0, page=page, limit=limit, query="")

        match = build_fts_query(query)
        total = self._store.count_matches(vault_id, match)
        entries = self._store.find_matches(vault_id, match, limit, page * limit)

        logger.debug(
            "Search %r in vault %d found %d results", query, vault_id, total,
        )
        return SearchResults(
            entries=entries,
            total=total,
            page=page,
            limit=limit,
            query=query,
        )
