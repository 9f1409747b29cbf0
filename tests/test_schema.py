"""Unit tests for shop_token_store.schema.SchemaResolver.

Coverage:
- resolve_credential_table() - override, defaults, fallback warning, miss, caching
- get_columns()              - lower-casing, per-table memoization, force_refresh
- capabilities()             - optional-column detection
- invalidate()               - targeted and full cache drops
"""

from __future__ import annotations

import logging

import pytest
from _test_helpers import FULL_CREDENTIAL_COLUMNS, MINIMAL_CREDENTIAL_COLUMNS, FakeExecutor

from shop_token_store.config import ConfigError
from shop_token_store.schema import UNRESOLVED, SchemaResolver, TableCapabilities

pytestmark = pytest.mark.unit


def _regclass_calls(db: FakeExecutor) -> list[str]:
    return [call.args[0] for call in db.calls_matching("to_regclass")]


class TestResolveCredentialTable:
    async def test_primary_default(self) -> None:
        db = FakeExecutor(existing_tables={"public.shopify_shop", "public.shopity_shop"})
        resolver = SchemaResolver(db)
        assert await resolver.resolve_credential_table() == "public.shopify_shop"
        assert _regclass_calls(db) == ["public.shopify_shop"]

    async def test_fallback_default_warns(self, caplog: pytest.LogCaptureFixture) -> None:
        db = FakeExecutor(existing_tables={"public.shopity_shop"})
        resolver = SchemaResolver(db)
        with caplog.at_level(logging.WARNING, logger="shop_token_store.schema"):
            assert await resolver.resolve_credential_table() == "public.shopity_shop"
        messages = [r.getMessage() for r in caplog.records]
        assert any("Using fallback shop token table public.shopity_shop" in m for m in messages)
        assert any("SHOP_TOKEN_TABLE" in m for m in messages)

    async def test_configured_table_wins(self) -> None:
        db = FakeExecutor(existing_tables={"app.tokens", "public.shopify_shop"})
        resolver = SchemaResolver(db, configured_table="app.tokens")
        assert await resolver.resolve_credential_table() == "app.tokens"
        assert _regclass_calls(db) == ["app.tokens"]

    async def test_missing_configured_table_warns_and_falls_through(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        db = FakeExecutor(existing_tables={"public.shopify_shop"})
        resolver = SchemaResolver(db, configured_table="app.tokens")
        with caplog.at_level(logging.WARNING, logger="shop_token_store.schema"):
            assert await resolver.resolve_credential_table() == "public.shopify_shop"
        messages = [r.getMessage() for r in caplog.records]
        assert any("Configured shop token table app.tokens not found" in m for m in messages)

    async def test_malformed_configured_table_is_ignored(self) -> None:
        db = FakeExecutor(existing_tables={"public.shopify_shop"})
        resolver = SchemaResolver(db, configured_table="app.tokens; DROP TABLE x")
        assert resolver.configured_table is None
        assert await resolver.resolve_credential_table() == "public.shopify_shop"

    async def test_no_table_returns_none_and_caches_the_miss(self) -> None:
        db = FakeExecutor()
        resolver = SchemaResolver(db)
        assert resolver.resolved_table is UNRESOLVED
        assert await resolver.resolve_credential_table() is None
        assert resolver.resolved_table is None
        assert await resolver.resolve_credential_table() is None
        assert len(_regclass_calls(db)) == 2  # both candidates, once

    async def test_result_is_memoized(self) -> None:
        db = FakeExecutor(existing_tables={"public.shopify_shop"})
        resolver = SchemaResolver(db)
        await resolver.resolve_credential_table()
        await resolver.resolve_credential_table()
        assert len(_regclass_calls(db)) == 1

    async def test_force_refresh_requeries(self) -> None:
        db = FakeExecutor()
        resolver = SchemaResolver(db)
        assert await resolver.resolve_credential_table() is None
        db.existing_tables.add("public.shopify_shop")
        assert await resolver.resolve_credential_table() is None
        assert await resolver.resolve_credential_table(force_refresh=True) == "public.shopify_shop"

    async def test_custom_candidates(self) -> None:
        db = FakeExecutor(existing_tables={"tenant.shops"})
        resolver = SchemaResolver(db, candidate_tables=("tenant.shops",))
        assert await resolver.resolve_credential_table() == "tenant.shops"


class TestGetColumns:
    async def test_lower_cases_names(self) -> None:
        mixed_case = frozenset({"Shop_Domain", "ACCESS_TOKEN"})
        db = FakeExecutor(columns={"public.shopify_shop": mixed_case})
        resolver = SchemaResolver(db)
        assert await resolver.get_columns("public.shopify_shop") == {"shop_domain", "access_token"}
        call = db.calls_matching("information_schema.columns")[0]
        assert call.args == ("public", "shopify_shop")

    async def test_memoized_per_table(self) -> None:
        db = FakeExecutor(
            columns={
                "public.shopify_shop": FULL_CREDENTIAL_COLUMNS,
                "public.shopity_shop": MINIMAL_CREDENTIAL_COLUMNS,
            }
        )
        resolver = SchemaResolver(db)
        await resolver.get_columns("public.shopify_shop")
        await resolver.get_columns("public.shopify_shop")
        await resolver.get_columns("public.shopity_shop")
        assert len(db.calls_matching("information_schema.columns")) == 2

    async def test_force_refresh_bypasses_cache(self) -> None:
        db = FakeExecutor(columns={"public.shopify_shop": MINIMAL_CREDENTIAL_COLUMNS})
        resolver = SchemaResolver(db)
        assert "refresh_token" not in await resolver.get_columns("public.shopify_shop")
        db.columns["public.shopify_shop"] = FULL_CREDENTIAL_COLUMNS
        assert "refresh_token" not in await resolver.get_columns("public.shopify_shop")
        refreshed = await resolver.get_columns("public.shopify_shop", force_refresh=True)
        assert "refresh_token" in refreshed

    async def test_unqualified_name_raises_before_io(self) -> None:
        db = FakeExecutor()
        resolver = SchemaResolver(db)
        with pytest.raises(ConfigError):
            await resolver.get_columns("shopify_shop")
        assert db.calls == []


class TestCapabilities:
    async def test_full_table(self) -> None:
        db = FakeExecutor(columns={"public.shopify_shop": FULL_CREDENTIAL_COLUMNS})
        caps = await SchemaResolver(db).capabilities("public.shopify_shop")
        assert caps == TableCapabilities(
            table_name="public.shopify_shop",
            has_access_token_expires_at=True,
            has_refresh_token=True,
            has_refresh_token_expires_at=True,
        )

    async def test_partial_table(self) -> None:
        columns = MINIMAL_CREDENTIAL_COLUMNS | {"refresh_token"}
        db = FakeExecutor(columns={"public.shopify_shop": columns})
        caps = await SchemaResolver(db).capabilities("public.shopify_shop")
        assert caps.has_refresh_token is True
        assert caps.has_access_token_expires_at is False
        assert caps.has_refresh_token_expires_at is False


class TestInvalidate:
    async def test_invalidate_one_table(self) -> None:
        db = FakeExecutor(
            existing_tables={"public.shopify_shop"},
            columns={"public.shopify_shop": FULL_CREDENTIAL_COLUMNS},
        )
        resolver = SchemaResolver(db)
        await resolver.resolve_credential_table()
        await resolver.get_columns("public.shopify_shop")
        resolver.invalidate("public.shopify_shop")
        assert resolver.resolved_table == "public.shopify_shop"
        await resolver.get_columns("public.shopify_shop")
        assert len(db.calls_matching("information_schema.columns")) == 2

    async def test_invalidate_everything(self) -> None:
        db = FakeExecutor(existing_tables={"public.shopify_shop"})
        resolver = SchemaResolver(db)
        await resolver.resolve_credential_table()
        resolver.invalidate()
        assert resolver.resolved_table is UNRESOLVED
        await resolver.resolve_credential_table()
        assert len(_regclass_calls(db)) == 2
