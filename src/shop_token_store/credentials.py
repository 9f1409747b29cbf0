"""Per-shop OAuth credential reconciliation over the resolved credential table.

Every write is a single ``INSERT ... ON CONFLICT (shop_domain) DO UPDATE``
statement, so concurrent reconciliations for one shop are serialized by
PostgreSQL rather than by a read-then-write in Python.

How each column behaves on conflict is declared in
:data:`CREDENTIAL_COLUMNS`:

- ``ALWAYS_OVERWRITE``: the incoming value replaces the stored one.
- ``ALWAYS_CLEAR``: the column is reset to NULL (``uninstalled_at``).
- ``INCOMING_WINS_IF_NON_NULL``: ``COALESCE(incoming, stored)``.
- ``EXISTING_WINS_IF_NON_NULL``: ``COALESCE(stored, incoming)``.  Only
  ``first_installed_at`` uses it; the first install time never moves.

Columns tied to a :class:`~shop_token_store.schema.TableCapabilities` flag are
written only when the resolved table has them.

Token values are never logged.
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shop_token_store.db import row_count

if TYPE_CHECKING:
    from shop_token_store.readiness import ReadinessGate
    from shop_token_store.schema import QueryExecutor, SchemaResolver, TableCapabilities

logger = logging.getLogger(__name__)

# Alias for the stored row inside ON CONFLICT ... DO UPDATE.
_STORED_ALIAS = "stored"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class CredentialTableMissingError(Exception):
    """Raised when no credential table can be resolved for a read or write.

    The message is safe to log.
    """


# ---------------------------------------------------------------------------
# Input model
# ---------------------------------------------------------------------------


class CredentialInput(BaseModel):
    """Incoming credential facts for one shop.

    Only ``shop_domain`` and ``access_token`` are required.  Optional fields
    left as ``None`` never erase a value already stored.
    """

    model_config = ConfigDict(extra="forbid")

    shop_domain: str = Field(min_length=1)
    access_token: str = Field(min_length=1)
    scopes: str | None = None
    first_installed_at_ms: int | None = None
    access_token_expires_at_ms: int | None = None
    refresh_token: str | None = None
    refresh_token_expires_at_ms: int | None = None
    host: str | None = None
    embedded: str | None = None
    locale: str | None = None
    associated_user_scope: str | None = None
    callback_timestamp: str | None = None

    @field_validator("shop_domain", "access_token")
    @classmethod
    def _normalize_non_empty(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("must be a non-empty string")
        return normalized

    @field_validator(
        "scopes",
        "refresh_token",
        "host",
        "embedded",
        "locale",
        "associated_user_scope",
        "callback_timestamp",
    )
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value or None

    def __repr__(self) -> str:
        return (
            f"CredentialInput("
            f"shop_domain={self.shop_domain!r}, "
            f"access_token=<REDACTED>, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"scopes={self.scopes!r})"
        )

    __str__ = __repr__


# ---------------------------------------------------------------------------
# Column policy table
# ---------------------------------------------------------------------------


class FieldPolicy(enum.StrEnum):
    """Conflict behaviour of one credential column."""

    ALWAYS_OVERWRITE = "always_overwrite"
    ALWAYS_CLEAR = "always_clear"
    INCOMING_WINS_IF_NON_NULL = "incoming_wins_if_non_null"
    EXISTING_WINS_IF_NON_NULL = "existing_wins_if_non_null"


@dataclass(frozen=True)
class CredentialColumn:
    """One column of the credential upsert."""

    name: str
    policy: FieldPolicy
    capability: str | None = None  # TableCapabilities attribute gating the column

    def update_clause(self) -> str:
        stored = f"{_STORED_ALIAS}.{self.name}"
        incoming = f"EXCLUDED.{self.name}"
        if self.policy is FieldPolicy.ALWAYS_OVERWRITE:
            return f"{self.name} = {incoming}"
        if self.policy is FieldPolicy.ALWAYS_CLEAR:
            return f"{self.name} = NULL"
        if self.policy is FieldPolicy.INCOMING_WINS_IF_NON_NULL:
            return f"{self.name} = COALESCE({incoming}, {stored})"
        return f"{self.name} = COALESCE({stored}, {incoming})"


CREDENTIAL_COLUMNS: tuple[CredentialColumn, ...] = (
    CredentialColumn("access_token", FieldPolicy.ALWAYS_OVERWRITE),
    CredentialColumn("scopes", FieldPolicy.ALWAYS_OVERWRITE),
    CredentialColumn("first_installed_at", FieldPolicy.EXISTING_WINS_IF_NON_NULL),
    CredentialColumn("installed_at", FieldPolicy.ALWAYS_OVERWRITE),
    CredentialColumn("uninstalled_at", FieldPolicy.ALWAYS_CLEAR),
    CredentialColumn("updated_at", FieldPolicy.ALWAYS_OVERWRITE),
    CredentialColumn("last_auth_at", FieldPolicy.ALWAYS_OVERWRITE),
    CredentialColumn("last_callback_timestamp", FieldPolicy.ALWAYS_OVERWRITE),
    CredentialColumn("host", FieldPolicy.INCOMING_WINS_IF_NON_NULL),
    CredentialColumn("embedded", FieldPolicy.INCOMING_WINS_IF_NON_NULL),
    CredentialColumn("locale", FieldPolicy.INCOMING_WINS_IF_NON_NULL),
    CredentialColumn("associated_user_scope", FieldPolicy.INCOMING_WINS_IF_NON_NULL),
    CredentialColumn(
        "access_token_expires_at",
        FieldPolicy.INCOMING_WINS_IF_NON_NULL,
        capability="has_access_token_expires_at",
    ),
    CredentialColumn(
        "refresh_token",
        FieldPolicy.INCOMING_WINS_IF_NON_NULL,
        capability="has_refresh_token",
    ),
    CredentialColumn(
        "refresh_token_expires_at",
        FieldPolicy.INCOMING_WINS_IF_NON_NULL,
        capability="has_refresh_token_expires_at",
    ),
)

CREDENTIAL_FIELD_POLICIES: dict[str, FieldPolicy] = {
    column.name: column.policy for column in CREDENTIAL_COLUMNS
}


# ---------------------------------------------------------------------------
# Statement building (pure)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UpsertStatement:
    """SQL text plus the column order its positional parameters follow."""

    sql: str
    columns: tuple[str, ...]

    def params(self, row: dict[str, Any]) -> list[Any]:
        return [row[column] for column in self.columns]


def applicable_columns(capabilities: TableCapabilities) -> tuple[CredentialColumn, ...]:
    """Return the policy columns the resolved table can accept."""
    return tuple(
        column
        for column in CREDENTIAL_COLUMNS
        if column.capability is None or getattr(capabilities, column.capability)
    )


def build_upsert_statement(capabilities: TableCapabilities) -> UpsertStatement:
    """Build the reconciliation statement for the table described by *capabilities*."""
    columns = applicable_columns(capabilities)
    names = ("shop_domain", *(column.name for column in columns))
    placeholders = ", ".join(f"${index}" for index in range(1, len(names) + 1))
    column_list = ",\n    ".join(names)
    set_list = ",\n    ".join(column.update_clause() for column in columns)
    sql = (
        f"INSERT INTO {capabilities.table_name} AS {_STORED_ALIAS} (\n"
        f"    {column_list}\n"
        f")\n"
        f"VALUES ({placeholders})\n"
        f"ON CONFLICT (shop_domain) DO UPDATE\n"
        f"SET\n"
        f"    {set_list}"
    )
    return UpsertStatement(sql=sql, columns=names)


def credential_row(credential: CredentialInput, timestamp_ms: int) -> dict[str, Any]:
    """Map *credential* onto column values for one reconciliation at *timestamp_ms*."""
    callback_timestamp = credential.callback_timestamp or (
        datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC).isoformat(timespec="milliseconds")
    ).replace("+00:00", "Z")
    return {
        "shop_domain": credential.shop_domain,
        "access_token": credential.access_token,
        "scopes": credential.scopes,
        "first_installed_at": (
            credential.first_installed_at_ms
            if credential.first_installed_at_ms is not None
            else timestamp_ms
        ),
        "installed_at": timestamp_ms,
        "uninstalled_at": None,
        "updated_at": timestamp_ms,
        "last_auth_at": timestamp_ms,
        "last_callback_timestamp": callback_timestamp,
        "host": credential.host,
        "embedded": credential.embedded,
        "locale": credential.locale,
        "associated_user_scope": credential.associated_user_scope,
        "access_token_expires_at": credential.access_token_expires_at_ms,
        "refresh_token": credential.refresh_token,
        "refresh_token_expires_at": credential.refresh_token_expires_at_ms,
    }


# ---------------------------------------------------------------------------
# CredentialReconciler
# ---------------------------------------------------------------------------


class CredentialReconciler:
    """Upsert, update and read per-shop credentials.

    Parameters
    ----------
    db:
        Query executor (normally a :class:`~shop_token_store.db.Database`).
    resolver:
        Resolves the credential table and its columns.
    gate:
        Awaited before every statement.
    clock:
        Returns epoch milliseconds.  Defaults to wall-clock time.
    """

    def __init__(
        self,
        db: QueryExecutor,
        resolver: SchemaResolver,
        gate: ReadinessGate,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._db = db
        self._resolver = resolver
        self._gate = gate
        self._clock = clock

    async def _require_table(self) -> str:
        await self._gate.wait()
        table = await self._resolver.resolve_credential_table()
        if table is None:
            raise CredentialTableMissingError(
                "No shop token table found. Create "
                f"{' or '.join(self._resolver.candidate_tables)}, or set SHOP_TOKEN_TABLE."
            )
        return table

    async def upsert(self, credential: CredentialInput) -> None:
        """Reconcile *credential* into the credential table.

        Raises
        ------
        CredentialTableMissingError
            If no credential table exists.
        """
        table = await self._require_table()
        capabilities = await self._resolver.capabilities(table)
        statement = build_upsert_statement(capabilities)
        row = credential_row(credential, self._clock())
        await self._db.execute(statement.sql, *statement.params(row))
        logger.info(
            "Shop token reconciled: shop=%s table=%s refresh_token_column=%s",
            credential.shop_domain,
            table,
            capabilities.has_refresh_token,
        )

    async def update_scopes(self, shop_domain: str, scopes: str | None) -> bool:
        """Replace the stored scope CSV.  Returns True if a row was updated."""
        table = await self._require_table()
        status = await self._db.execute(
            f"""
            UPDATE {table}
            SET
                scopes = $2,
                updated_at = $3
            WHERE shop_domain = $1
            """,
            shop_domain,
            scopes,
            self._clock(),
        )
        updated = row_count(status) > 0
        logger.info(
            "Shop scopes updated: shop=%s scopes=%r matched=%s", shop_domain, scopes, updated
        )
        return updated

    async def mark_uninstalled(self, shop_domain: str) -> bool:
        """Stamp ``uninstalled_at`` without deleting the row.  Returns True if a row matched."""
        table = await self._require_table()
        timestamp_ms = self._clock()
        status = await self._db.execute(
            f"""
            UPDATE {table}
            SET
                uninstalled_at = $2,
                updated_at = $3
            WHERE shop_domain = $1
            """,
            shop_domain,
            timestamp_ms,
            timestamp_ms,
        )
        updated = row_count(status) > 0
        if updated:
            logger.info("Shop marked uninstalled: shop=%s", shop_domain)
        else:
            logger.debug("No shop token row to mark uninstalled: shop=%s", shop_domain)
        return updated

    async def get_access_token(self, shop_domain: str) -> str | None:
        """Return the stored access token of an installed shop, else None."""
        table = await self._require_table()
        token = await self._db.fetchval(
            f"""
            SELECT access_token
            FROM {table}
            WHERE shop_domain = $1
              AND (uninstalled_at IS NULL OR uninstalled_at = 0)
            LIMIT 1
            """,
            shop_domain,
        )
        return token or None
