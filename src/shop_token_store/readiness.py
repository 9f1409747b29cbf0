"""One-shot asynchronous bootstrap shared by every store operation.

The first caller of :meth:`ReadinessGate.wait` starts the initializer as a
task.  Everyone else (including callers that arrive while it is still
running) awaits that same task.  The outcome is kept for the life of the
gate: a success lets every later call through immediately, a failure is
re-raised to every later caller without re-running the initializer.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from shop_token_store.schema import QueryExecutor, SchemaResolver

logger = logging.getLogger(__name__)

SESSION_TABLE = "public.shopify_app_session"

_SESSION_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {SESSION_TABLE} (
    id           TEXT PRIMARY KEY,
    shop         TEXT NOT NULL,
    is_online    BOOLEAN NOT NULL DEFAULT false,
    expires_at   TIMESTAMPTZ NULL,
    session_data JSONB NOT NULL,
    created_at   BIGINT NOT NULL,
    updated_at   BIGINT NOT NULL
)
"""

_SESSION_SHOP_INDEX_DDL = f"""
CREATE INDEX IF NOT EXISTS shopify_app_session_shop_idx
ON {SESSION_TABLE} (shop)
"""


class GateState(enum.StrEnum):
    """Lifecycle of a :class:`ReadinessGate`."""

    PENDING = "pending"
    RUNNING = "running"
    READY = "ready"
    FAILED = "failed"


class ReadinessGate:
    """Run an async initializer at most once and share its outcome."""

    def __init__(self, initializer: Callable[[], Awaitable[None]], *, name: str = "store") -> None:
        self._initializer = initializer
        self._name = name
        self._task: asyncio.Task[None] | None = None

    @property
    def state(self) -> GateState:
        if self._task is None:
            return GateState.PENDING
        if not self._task.done():
            return GateState.RUNNING
        if self._task.cancelled() or self._task.exception() is not None:
            return GateState.FAILED
        return GateState.READY

    async def wait(self) -> None:
        """Block until bootstrap has completed; re-raise its failure if it failed."""
        if self._task is None:
            # No await between the check and the assignment, so exactly one
            # caller creates the task.
            self._task = asyncio.ensure_future(self._run())
        # Shield so a cancelled caller does not cancel the shared bootstrap.
        await asyncio.shield(self._task)

    async def _run(self) -> None:
        logger.debug("Readiness gate %r: bootstrap started", self._name)
        try:
            await self._initializer()
        except Exception:
            logger.exception("Failed to initialize database runtime tables for %r", self._name)
            raise
        logger.info("Readiness gate %r: bootstrap complete", self._name)


async def bootstrap_runtime_tables(db: QueryExecutor, resolver: SchemaResolver) -> None:
    """Create the session table if missing and resolve the credential table.

    A missing credential table is only warned about here; writes and reads
    that need it fail later, so deployments without credential storage can
    still boot.
    """
    await db.execute(_SESSION_TABLE_DDL)
    await db.execute(_SESSION_SHOP_INDEX_DDL)
    logger.debug("Ensured session table %s", SESSION_TABLE)

    resolved = await resolver.resolve_credential_table(force_refresh=True)
    if resolved is None:
        logger.warning(
            "No shop token table found. Create %s, or set SHOP_TOKEN_TABLE.",
            " or ".join(resolver.candidate_tables),
        )
    else:
        logger.info("Resolved shop token table: %s", resolved)
