"""Credential table discovery and column introspection.

Deployments carry the per-shop credential table under one of several names
and with differing column sets depending on their migration history.  The
:class:`SchemaResolver` finds the authoritative table, reads its columns once,
and caches both answers until explicitly refreshed.

Resolution order (``resolve_credential_table()``):

1. The configured override (``SHOP_TOKEN_TABLE``), if it exists.
2. The built-in candidates, in order, via ``to_regclass``.
3. ``None`` when no candidate exists.  This miss is cached as well.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Final, Protocol

from shop_token_store.config import (
    DEFAULT_CREDENTIAL_TABLES,
    normalize_qualified_table_name,
    split_qualified_table_name,
)

logger = logging.getLogger(__name__)


class _Unresolved:
    def __repr__(self) -> str:
        return "<unresolved>"


# Distinct from None, which is a cached "no table exists" answer.
UNRESOLVED: Final = _Unresolved()


class QueryExecutor(Protocol):
    """The subset of :class:`~shop_token_store.db.Database` the store layer calls."""

    async def fetch(self, query: str, *args: Any) -> list[Any]: ...

    async def fetchrow(self, query: str, *args: Any) -> Any: ...

    async def fetchval(self, query: str, *args: Any) -> Any: ...

    async def execute(self, query: str, *args: Any) -> str: ...


@dataclass(frozen=True)
class TableCapabilities:
    """Optional credential columns present on a resolved table."""

    table_name: str
    has_access_token_expires_at: bool = False
    has_refresh_token: bool = False
    has_refresh_token_expires_at: bool = False

    @classmethod
    def from_columns(cls, table_name: str, columns: set[str] | frozenset[str]) -> TableCapabilities:
        return cls(
            table_name=table_name,
            has_access_token_expires_at="access_token_expires_at" in columns,
            has_refresh_token="refresh_token" in columns,
            has_refresh_token_expires_at="refresh_token_expires_at" in columns,
        )


class SchemaResolver:
    """Resolve and cache the credential table and its columns.

    Cache writes are idempotent (every writer stores the same answer for the
    same query), so concurrent population needs no lock.
    """

    def __init__(
        self,
        db: QueryExecutor,
        *,
        configured_table: str | None = None,
        candidate_tables: tuple[str, ...] = DEFAULT_CREDENTIAL_TABLES,
    ) -> None:
        self._db = db
        self.configured_table = normalize_qualified_table_name(configured_table)
        self.candidate_tables = candidate_tables
        self._resolved_table: str | None | _Unresolved = UNRESOLVED
        self._columns: dict[str, frozenset[str]] = {}

    @property
    def resolved_table(self) -> str | None | _Unresolved:
        """The cached resolution, or :data:`UNRESOLVED` before the first lookup."""
        return self._resolved_table

    async def table_exists(self, table_name: str) -> bool:
        regclass = await self._db.fetchval("SELECT to_regclass($1) AS regclass", table_name)
        return regclass is not None

    async def resolve_credential_table(self, *, force_refresh: bool = False) -> str | None:
        """Return the qualified name of the credential table, or None if absent."""
        if not force_refresh and self._resolved_table is not UNRESOLVED:
            return self._resolved_table  # type: ignore[return-value]

        resolved = await self._lookup_credential_table()
        self._resolved_table = resolved
        return resolved

    async def _lookup_credential_table(self) -> str | None:
        if self.configured_table is not None:
            if await self.table_exists(self.configured_table):
                return self.configured_table
            logger.warning(
                "Configured shop token table %s not found in DATABASE_URL.",
                self.configured_table,
            )

        for index, candidate in enumerate(self.candidate_tables):
            if not await self.table_exists(candidate):
                continue
            if index > 0:
                logger.warning(
                    "Using fallback shop token table %s. "
                    "Set SHOP_TOKEN_TABLE to pin this explicitly.",
                    candidate,
                )
            return candidate
        return None

    async def get_columns(self, table_name: str, *, force_refresh: bool = False) -> frozenset[str]:
        """Return the lower-cased column names of *table_name*.

        Raises
        ------
        ConfigError
            If *table_name* is not a ``schema.table`` name.
        """
        if not force_refresh and table_name in self._columns:
            return self._columns[table_name]

        schema, table = split_qualified_table_name(table_name)
        rows = await self._db.fetch(
            """
            SELECT column_name
            FROM information_schema.columns
            WHERE table_schema = $1
              AND table_name = $2
            """,
            schema,
            table,
        )
        columns = frozenset(row["column_name"].lower() for row in rows)
        self._columns[table_name] = columns
        logger.debug("Introspected %d column(s) on %s", len(columns), table_name)
        return columns

    async def capabilities(self, table_name: str) -> TableCapabilities:
        """Return the optional-column capabilities of *table_name*."""
        return TableCapabilities.from_columns(table_name, await self.get_columns(table_name))

    def invalidate(self, table_name: str | None = None) -> None:
        """Drop cached answers.

        With *table_name*, only that table's column set is forgotten.
        Without it, the table resolution and every column set are cleared.
        """
        if table_name is not None:
            self._columns.pop(table_name, None)
            return
        self._resolved_table = UNRESOLVED
        self._columns.clear()
