"""Connection pool management for the shop token store."""

from __future__ import annotations

import logging
import re
from functools import cached_property
from typing import Any
from urllib.parse import parse_qs, unquote, urlparse

import asyncpg

from shop_token_store.config import StoreConfig

logger = logging.getLogger(__name__)

_VALID_SSL_MODES = {"disable", "prefer", "allow", "require", "verify-ca", "verify-full"}
# Hosts that only accept TLS connections.
_MANAGED_TLS_HOST_PATTERN = re.compile(r"\.neon\.tech$", re.IGNORECASE)

# Non-production Database instances, keyed by connection string.  Reused so
# repeated app reloads in one process do not exhaust connection slots.
_DEV_DATABASES: dict[str, Database] = {}


def _normalize_ssl_mode(value: str | None) -> str | None:
    """Normalize an SSL mode value for asyncpg or return None if unset/invalid."""
    if value is None:
        return None
    normalized = value.strip().lower()
    if not normalized:
        return None
    if normalized in _VALID_SSL_MODES:
        return normalized
    logger.warning("Ignoring invalid PostgreSQL sslmode value: %s", value)
    return None


def ssl_mode_for_url(database_url: str) -> str | None:
    """Pick the asyncpg ``ssl`` argument for a connection string.

    An explicit ``sslmode`` query parameter wins.  Otherwise a managed-TLS
    host switches TLS on; for everything else asyncpg's default applies.
    """
    parsed = urlparse(database_url)
    sslmode = _normalize_ssl_mode(parse_qs(parsed.query).get("sslmode", [None])[0])
    if sslmode is not None:
        return sslmode
    if parsed.hostname and _MANAGED_TLS_HOST_PATTERN.search(parsed.hostname):
        return "require"
    return None


def db_params_from_database_url(database_url: str) -> dict[str, str | int]:
    """Parse connection params from a libpq-style connection string."""
    parsed = urlparse(database_url)
    database = unquote(parsed.path.lstrip("/")) or "postgres"
    return {
        "host": parsed.hostname or "localhost",
        "port": parsed.port or 5432,
        "user": unquote(parsed.username or "postgres"),
        "password": unquote(parsed.password or "postgres"),
        "database": database,
    }


class Database:
    """Owns one asyncpg connection pool for the life of a store.

    The pool hands out an independent connection per call, so a single
    instance is safe to share between concurrent tasks.  Each :meth:`connect`
    is paired with one :meth:`close`; the pool is released when the last
    holder closes.
    """

    def __init__(
        self,
        database_url: str,
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 10,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None
        self._holders = 0

    @cached_property
    def ssl(self) -> str | None:
        """TLS policy derived from the connection string (computed once)."""
        return ssl_mode_for_url(self.database_url)

    @property
    def db_name(self) -> str:
        return str(db_params_from_database_url(self.database_url)["database"])

    async def connect(self) -> asyncpg.Pool:
        """Create the connection pool (reused if already open) and return it."""
        if self.pool is not None:
            self._holders += 1
            return self.pool
        pool_kwargs: dict[str, Any] = {
            **db_params_from_database_url(self.database_url),
            "min_size": self.min_pool_size,
            "max_size": self.max_pool_size,
        }
        if self.ssl is not None:
            pool_kwargs["ssl"] = self.ssl
        self.pool = await asyncpg.create_pool(**pool_kwargs)
        self._holders = 1
        logger.info(
            "Connection pool created for: %s (max_size=%d, ssl=%s)",
            self.db_name,
            self.max_pool_size,
            self.ssl or "default",
        )
        return self.pool

    async def close(self) -> None:
        """Release one holder; the pool is closed once no holder remains."""
        self._holders = max(self._holders - 1, 0)
        if self._holders > 0:
            logger.debug(
                "Connection pool for %s still held by %d store(s)", self.db_name, self._holders
            )
            return
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Connection pool closed for: %s", self.db_name)

    # -- Pool proxy methods ------------------------------------------------

    def _require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise RuntimeError(f"Database '{self.db_name}' has no active connection pool")
        return self.pool

    async def fetch(self, query: str, *args: Any, timeout: float | None = None) -> list[Any]:
        """Proxy to asyncpg Pool.fetch."""
        return await self._require_pool().fetch(query, *args, timeout=timeout)

    async def fetchrow(self, query: str, *args: Any, timeout: float | None = None) -> Any:
        """Proxy to asyncpg Pool.fetchrow."""
        return await self._require_pool().fetchrow(query, *args, timeout=timeout)

    async def fetchval(self, query: str, *args: Any, timeout: float | None = None) -> Any:
        """Proxy to asyncpg Pool.fetchval."""
        return await self._require_pool().fetchval(query, *args, timeout=timeout)

    async def execute(self, query: str, *args: Any, timeout: float | None = None) -> str:
        """Proxy to asyncpg Pool.execute."""
        return await self._require_pool().execute(query, *args, timeout=timeout)

    @classmethod
    def from_config(cls, config: StoreConfig) -> Database:
        """Create a Database sized for the config's deployment profile.

        Outside production the instance is cached per connection string and
        returned again on later calls.
        """
        if config.production:
            return cls(config.database_url, max_pool_size=config.max_pool_size)
        cached = _DEV_DATABASES.get(config.database_url)
        if cached is None:
            cached = cls(config.database_url, max_pool_size=config.max_pool_size)
            _DEV_DATABASES[config.database_url] = cached
        return cached


def row_count(status: str | None) -> int:
    """Return the affected-row count from an asyncpg status string like ``UPDATE 3``."""
    if not status:
        return 0
    tail = status.split()[-1]
    return int(tail) if tail.isdigit() else 0
