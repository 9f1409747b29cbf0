"""Operator CLI for the shop token store."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from typing import TypeVar

import click

from shop_token_store.config import ConfigError, StoreConfig
from shop_token_store.core.logging import configure_logging
from shop_token_store.gateway import normalize_shop_domain
from shop_token_store.lifecycle import handle_app_uninstalled
from shop_token_store.store import ShopTokenStore

T = TypeVar("T")


def _load_config() -> StoreConfig:
    try:
        return StoreConfig.from_env()
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)


def _run(config: StoreConfig, action: Callable[[ShopTokenStore], Awaitable[T]]) -> T:
    async def _main() -> T:
        async with ShopTokenStore.from_config(config) as store:
            return await action(store)

    return asyncio.run(_main())


def _shop_argument(value: str) -> str:
    shop = normalize_shop_domain(value)
    if shop is None:
        raise click.BadParameter("expected your-store.myshopify.com")
    return shop


@click.group()
@click.version_option(version="0.1.0")
@click.option("--log-level", default=None, help="Override LOG_LEVEL")
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """Shop token store - credential and session storage maintenance."""
    config = _load_config()
    configure_logging(level=log_level or config.logging.level, fmt=config.logging.format)
    ctx.obj = config


@cli.command()
@click.pass_obj
def bootstrap(config: StoreConfig) -> None:
    """Create runtime tables and report the resolved credential table."""

    async def _bootstrap(store: ShopTokenStore) -> tuple[str | None, frozenset[str]]:
        await store.ready()
        table = await store.resolver.resolve_credential_table()
        columns = await store.resolver.get_columns(table) if table else frozenset()
        return table, columns

    table, columns = _run(config, _bootstrap)
    if table is None:
        click.echo("No shop token table found.")
        sys.exit(1)
    click.echo(f"Shop token table: {table}")
    click.echo(f"Columns: {', '.join(sorted(columns))}")


@cli.command()
@click.argument("shop")
@click.pass_obj
def token(config: StoreConfig, shop: str) -> None:
    """Report whether SHOP has a usable access token (the token is not printed)."""
    shop = _shop_argument(shop)

    async def _lookup(store: ShopTokenStore) -> str | None:
        return await store.credentials.get_access_token(shop)

    if _run(config, _lookup) is None:
        click.echo(f"{shop}: no usable access token")
        sys.exit(1)
    click.echo(f"{shop}: access token present")


@cli.command()
@click.argument("shop")
@click.pass_obj
def uninstall(config: StoreConfig, shop: str) -> None:
    """Mark SHOP uninstalled and delete its stored sessions."""
    shop = _shop_argument(shop)
    result = _run(config, lambda store: handle_app_uninstalled(store, shop))
    click.echo(
        f"{shop}: marked_uninstalled={result.marked_uninstalled} "
        f"sessions_deleted={result.sessions_deleted}"
    )
    if not result.ok:
        for error in result.errors or []:
            click.echo(f"  error: {error}", err=True)
        sys.exit(1)


def main() -> None:
    cli()
