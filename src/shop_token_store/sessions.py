"""Storage for OAuth sessions (online and offline) in ``shopify_app_session``.

Each session is kept whole in the ``session_data`` JSONB payload, with
datetimes written as ISO-8601 strings.  Fields this layer does not know
about are preserved round-trip.  ``shop``, ``is_online`` and ``expires_at``
are copied into their own columns for lookup.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from shop_token_store.credentials import now_ms
from shop_token_store.db import row_count
from shop_token_store.readiness import SESSION_TABLE

if TYPE_CHECKING:
    from shop_token_store.readiness import ReadinessGate
    from shop_token_store.schema import QueryExecutor

logger = logging.getLogger(__name__)

FIND_BY_SHOP_LIMIT = 25


class AssociatedUser(BaseModel):
    """The user behind an online session (snake_case keys, as the platform sends them)."""

    model_config = ConfigDict(extra="allow")

    id: int | str | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    locale: str | None = None
    account_owner: bool | None = None
    collaborator: bool | None = None
    email_verified: bool | None = None


class OnlineAccessInfo(BaseModel):
    """Per-user access details attached to online sessions."""

    model_config = ConfigDict(extra="allow")

    expires_in: int | None = None
    associated_user_scope: str | None = None
    associated_user: AssociatedUser | None = None


class Session(BaseModel):
    """A materialized OAuth session, as produced by the platform SDK."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str = Field(min_length=1)
    shop: str = Field(min_length=1)
    is_online: bool = False
    state: str | None = None
    access_token: str | None = None
    scope: str | None = None
    expires: datetime | None = None
    refresh_token: str | None = None
    refresh_token_expires: datetime | None = None
    online_access_info: OnlineAccessInfo | None = None

    def __repr__(self) -> str:
        return (
            f"Session("
            f"id={self.id!r}, "
            f"shop={self.shop!r}, "
            f"is_online={self.is_online!r}, "
            f"access_token={'<REDACTED>' if self.access_token else None}, "
            f"scope={self.scope!r})"
        )

    __str__ = __repr__

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the JSON-safe camelCase payload stored in ``session_data``."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_payload(cls, payload: dict[str, Any] | str) -> Session:
        """Inverse of :meth:`to_payload`."""
        if isinstance(payload, str):
            payload = json.loads(payload)
        return cls.model_validate(payload)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Attach UTC to a naive datetime; asyncpg rejects naive values for TIMESTAMPTZ."""
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=UTC)


class SessionStore:
    """CRUD over the fixed-schema session table, gated on bootstrap."""

    def __init__(
        self,
        db: QueryExecutor,
        gate: ReadinessGate,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._db = db
        self._gate = gate
        self._clock = clock

    async def store(self, session: Session) -> bool:
        """Insert or replace *session*.  ``created_at`` is kept on replace."""
        await self._gate.wait()
        timestamp_ms = self._clock()
        await self._db.execute(
            f"""
            INSERT INTO {SESSION_TABLE}
                (id, shop, is_online, expires_at, session_data, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7)
            ON CONFLICT (id) DO UPDATE SET
                shop         = EXCLUDED.shop,
                is_online    = EXCLUDED.is_online,
                expires_at   = EXCLUDED.expires_at,
                session_data = EXCLUDED.session_data,
                updated_at   = EXCLUDED.updated_at
            """,
            session.id,
            session.shop,
            session.is_online,
            ensure_utc(session.expires),
            json.dumps(session.to_payload()),
            timestamp_ms,
            timestamp_ms,
        )
        logger.debug(
            "Session stored: id=%s shop=%s online=%s", session.id, session.shop, session.is_online
        )
        return True

    async def load(self, session_id: str) -> Session | None:
        """Return the stored session, or None if absent."""
        await self._gate.wait()
        payload = await self._db.fetchval(
            f"SELECT session_data FROM {SESSION_TABLE} WHERE id = $1",
            session_id,
        )
        if payload is None:
            return None
        return Session.from_payload(payload)

    async def delete(self, session_id: str) -> bool:
        """Delete one session.  Deleting a missing id still succeeds."""
        await self._gate.wait()
        status = await self._db.execute(f"DELETE FROM {SESSION_TABLE} WHERE id = $1", session_id)
        logger.debug("Session delete: id=%s removed=%d", session_id, row_count(status))
        return True

    async def delete_many(self, session_ids: Sequence[str]) -> bool:
        """Delete every session in *session_ids*.  An empty list issues no query."""
        ids = list(session_ids)
        if not ids:
            return True
        await self._gate.wait()
        status = await self._db.execute(
            f"DELETE FROM {SESSION_TABLE} WHERE id = ANY($1::text[])",
            ids,
        )
        logger.info("Sessions deleted: requested=%d removed=%d", len(ids), row_count(status))
        return True

    async def find_by_shop(self, shop: str) -> list[Session]:
        """Return up to 25 sessions for *shop*, most recently updated first."""
        await self._gate.wait()
        rows = await self._db.fetch(
            f"""
            SELECT session_data
            FROM {SESSION_TABLE}
            WHERE shop = $1
            ORDER BY updated_at DESC
            LIMIT {FIND_BY_SHOP_LIMIT}
            """,
            shop,
        )
        return [Session.from_payload(row["session_data"]) for row in rows]
