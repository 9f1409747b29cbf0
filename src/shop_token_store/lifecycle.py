"""App lifecycle flows built on the store: after-auth, uninstall and scope changes.

These are the entry points the OAuth and webhook handlers call.  Each flow
that touches both tables runs its steps independently: a failure in one
step is logged and reported in the result, and the next step still runs.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from shop_token_store.core.logging import shop_context
from shop_token_store.credentials import CredentialInput
from shop_token_store.sessions import ensure_utc

if TYPE_CHECKING:
    from shop_token_store.sessions import Session
    from shop_token_store.store import ShopTokenStore

logger = logging.getLogger(__name__)


def _to_ms(value: datetime | None) -> int | None:
    """Epoch milliseconds for *value*; naive datetimes are read as UTC."""
    if value is None:
        return None
    return int(ensure_utc(value).timestamp() * 1000)


def credential_input_from_session(session: Session) -> CredentialInput:
    """Build the reconciliation input for a freshly authenticated session.

    Raises
    ------
    ValueError
        If the session carries no access token.
    """
    if not session.access_token:
        raise ValueError(f"Session {session.id!r} has no access token")
    access_info = session.online_access_info
    user = access_info.associated_user if access_info else None
    return CredentialInput(
        shop_domain=session.shop,
        access_token=session.access_token,
        scopes=session.scope,
        access_token_expires_at_ms=_to_ms(session.expires),
        refresh_token=session.refresh_token,
        refresh_token_expires_at_ms=_to_ms(session.refresh_token_expires),
        locale=user.locale if user else None,
        associated_user_scope=access_info.associated_user_scope if access_info else None,
    )


async def after_auth(store: ShopTokenStore, session: Session) -> bool:
    """Record the shop credential once OAuth completes.

    Failures are logged and swallowed so the OAuth redirect still happens.
    Returns True if the credential was reconciled.
    """
    with shop_context(session.shop):
        if not session.access_token:
            logger.error("Missing access token for %s during afterAuth", session.shop)
            return False
        try:
            await store.credentials.upsert(credential_input_from_session(session))
        except Exception:
            logger.exception("Failed to upsert shop token for %s", session.shop)
            return False
        return True


@dataclass
class UninstallResult:
    """Outcome of :func:`handle_app_uninstalled`."""

    shop: str
    marked_uninstalled: bool = False
    sessions_deleted: int = 0
    errors: list[str] | None = None

    @property
    def ok(self) -> bool:
        return not self.errors


async def handle_app_uninstalled(store: ShopTokenStore, shop: str) -> UninstallResult:
    """Mark *shop* uninstalled and delete all of its stored sessions."""
    result = UninstallResult(shop=shop)
    errors: list[str] = []
    with shop_context(shop):
        try:
            result.marked_uninstalled = await store.credentials.mark_uninstalled(shop)
        except Exception as exc:
            logger.exception("Failed to mark %s as uninstalled in shop token table", shop)
            errors.append(f"mark_uninstalled: {exc}")

        try:
            sessions = await store.sessions.find_by_shop(shop)
            await store.sessions.delete_many([stored.id for stored in sessions])
            result.sessions_deleted = len(sessions)
        except Exception as exc:
            logger.exception("Failed to delete app sessions for %s", shop)
            errors.append(f"delete_sessions: {exc}")

    result.errors = errors or None
    return result


def scopes_to_csv(scopes: Sequence[str] | None) -> str | None:
    """Join a scope list to CSV; an empty or missing list becomes None."""
    if not scopes:
        return None
    return ",".join(scopes) or None


async def handle_scopes_update(
    store: ShopTokenStore,
    shop: str,
    current_scopes: Sequence[str] | None,
) -> str | None:
    """Apply a scope-change webhook to the credential row and every stored session.

    Returns the scope CSV that was written.
    """
    scope_csv = scopes_to_csv(current_scopes)
    with shop_context(shop):
        try:
            await store.credentials.update_scopes(shop, scope_csv)
        except Exception:
            logger.exception("Failed to update scopes in shop token table for %s", shop)

        try:
            for existing in await store.sessions.find_by_shop(shop):
                await store.sessions.store(existing.model_copy(update={"scope": scope_csv}))
        except Exception:
            logger.exception("Failed to update app sessions scope for %s", shop)
    return scope_csv


@dataclass(frozen=True)
class ResolvedToken:
    """Token details handed to internal callers of the token resolver."""

    shop: str
    access_token: str
    scope: str | None
    access_token_expires_at_ms: int | None
    refresh_token_expires_at_ms: int | None

    def __repr__(self) -> str:
        return f"ResolvedToken(shop={self.shop!r}, access_token=<REDACTED>, scope={self.scope!r})"


async def resolve_offline_token(store: ShopTokenStore, session: Session) -> ResolvedToken:
    """Reconcile the credential from an offline session and return its token.

    Unlike :func:`after_auth`, storage errors propagate: the caller is
    answering a token request and must report the failure.
    """
    with shop_context(session.shop):
        credential = credential_input_from_session(session)
        await store.credentials.upsert(credential)
    return ResolvedToken(
        shop=credential.shop_domain,
        access_token=credential.access_token,
        scope=credential.scopes,
        access_token_expires_at_ms=credential.access_token_expires_at_ms,
        refresh_token_expires_at_ms=credential.refresh_token_expires_at_ms,
    )
