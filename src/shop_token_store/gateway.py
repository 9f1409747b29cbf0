"""Shared-secret checks and shop normalization for internal gateway callers.

Secret precedence is fixed and documented here so every internal endpoint
agrees on it:

Configured secret, first non-empty of::

    INTERNAL_GATEWAY_SECRET
    INTERNAL_TOKEN_RESOLVE_SECRET
    TOKEN_RESOLVE_SECRET
    TOKEN_SYNC_SECRET

Provided secret, first non-empty of the headers::

    x-internal-gateway-secret
    x-token-resolve-secret
    x-internal-api-secret
    Authorization: Bearer <secret>

Secrets are never logged.
"""

from __future__ import annotations

import enum
import hmac
import logging
import os
import re
from collections.abc import Mapping

logger = logging.getLogger(__name__)

GATEWAY_SECRET_ENV_VARS: tuple[str, ...] = (
    "INTERNAL_GATEWAY_SECRET",
    "INTERNAL_TOKEN_RESOLVE_SECRET",
    "TOKEN_RESOLVE_SECRET",
    "TOKEN_SYNC_SECRET",
)

GATEWAY_SECRET_HEADERS: tuple[str, ...] = (
    "x-internal-gateway-secret",
    "x-token-resolve-secret",
    "x-internal-api-secret",
)

_MYSHOPIFY_DOMAIN_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*\.myshopify\.com$")


class GatewayAuthStatus(enum.StrEnum):
    """Outcome of :func:`verify_gateway_secret`."""

    OK = "ok"
    DISABLED = "disabled"  # no secret configured on this service
    UNAUTHORIZED = "unauthorized"


def normalize_shop_domain(value: object) -> str | None:
    """Return the lower-cased ``*.myshopify.com`` domain, or None if invalid."""
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    if _MYSHOPIFY_DOMAIN_PATTERN.fullmatch(normalized) is None:
        return None
    return normalized


def resolve_gateway_secret(environ: Mapping[str, str] | None = None) -> str | None:
    """Return the configured gateway secret, or None when the gateway is disabled."""
    env = os.environ if environ is None else environ
    for name in GATEWAY_SECRET_ENV_VARS:
        value = (env.get(name) or "").strip()
        if value:
            return value
    return None


def extract_provided_secret(headers: Mapping[str, str]) -> str | None:
    """Return the secret a caller presented, or None."""
    lowered = {key.lower(): value for key, value in headers.items()}
    for name in GATEWAY_SECRET_HEADERS:
        value = (lowered.get(name) or "").strip()
        if value:
            return value

    authorization = lowered.get("authorization") or ""
    if authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None


def verify_gateway_secret(
    headers: Mapping[str, str],
    environ: Mapping[str, str] | None = None,
) -> GatewayAuthStatus:
    """Compare the presented secret against the configured one in constant time."""
    expected = resolve_gateway_secret(environ)
    if expected is None:
        logger.warning(
            "Internal gateway is disabled. Set INTERNAL_GATEWAY_SECRET on the app service."
        )
        return GatewayAuthStatus.DISABLED

    provided = extract_provided_secret(headers)
    if provided is None or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.info("Rejected internal gateway request: secret missing or mismatched")
        return GatewayAuthStatus.UNAUTHORIZED
    return GatewayAuthStatus.OK
