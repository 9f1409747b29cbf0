"""The shop token store: one object owning the pool, caches and bootstrap gate.

Usage::

    config = StoreConfig.from_env()
    async with ShopTokenStore.from_config(config) as store:
        await store.credentials.upsert(CredentialInput(shop_domain=shop, access_token=token))
        token = await store.credentials.get_access_token(shop)
        sessions = await store.sessions.find_by_shop(shop)

Tests construct independent stores over their own pools instead of sharing
process-wide state.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from shop_token_store.config import DEFAULT_CREDENTIAL_TABLES, StoreConfig
from shop_token_store.credentials import CredentialReconciler, now_ms
from shop_token_store.db import Database
from shop_token_store.readiness import ReadinessGate, bootstrap_runtime_tables
from shop_token_store.schema import SchemaResolver
from shop_token_store.sessions import SessionStore

if TYPE_CHECKING:
    from types import TracebackType

    from shop_token_store.schema import QueryExecutor

logger = logging.getLogger(__name__)


class ShopTokenStore:
    """Credential reconciler and session store sharing one gate and one resolver.

    Parameters
    ----------
    db:
        The query executor.  A :class:`~shop_token_store.db.Database` is
        connected by :meth:`open` and closed by :meth:`close`; any other
        executor is used as-is.
    credential_table:
        Optional ``schema.table`` override for the credential table.
    candidate_tables:
        Default credential tables, tried in order.
    clock:
        Returns epoch milliseconds for written timestamps.
    """

    def __init__(
        self,
        db: QueryExecutor,
        *,
        credential_table: str | None = None,
        candidate_tables: tuple[str, ...] = DEFAULT_CREDENTIAL_TABLES,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.db = db
        self.resolver = SchemaResolver(
            db,
            configured_table=credential_table,
            candidate_tables=candidate_tables,
        )
        self.gate = ReadinessGate(self._bootstrap, name="shop_token_store")
        self.credentials = CredentialReconciler(db, self.resolver, self.gate, clock=clock)
        self.sessions = SessionStore(db, self.gate, clock=clock)

    @classmethod
    def from_config(cls, config: StoreConfig) -> ShopTokenStore:
        return cls(
            Database.from_config(config),
            credential_table=config.credential_table,
            candidate_tables=config.candidate_tables,
        )

    async def _bootstrap(self) -> None:
        await bootstrap_runtime_tables(self.db, self.resolver)

    async def open(self) -> ShopTokenStore:
        """Connect the pool (when the executor is a Database)."""
        if isinstance(self.db, Database):
            await self.db.connect()
        return self

    async def close(self) -> None:
        if isinstance(self.db, Database):
            await self.db.close()

    async def ready(self) -> None:
        """Await the bootstrap gate without performing any other operation."""
        await self.gate.wait()

    async def __aenter__(self) -> ShopTokenStore:
        return await self.open()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"ShopTokenStore(db={self.db!r}, gate={self.gate.state.value})"
