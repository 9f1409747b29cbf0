"""Per-shop OAuth credential and session storage for a multi-tenant app integration."""

from shop_token_store.config import ConfigError, StoreConfig
from shop_token_store.credentials import (
    CredentialInput,
    CredentialReconciler,
    CredentialTableMissingError,
    FieldPolicy,
)
from shop_token_store.db import Database
from shop_token_store.readiness import GateState, ReadinessGate
from shop_token_store.schema import SchemaResolver, TableCapabilities
from shop_token_store.sessions import Session, SessionStore
from shop_token_store.store import ShopTokenStore

__all__ = [
    "ConfigError",
    "CredentialInput",
    "CredentialReconciler",
    "CredentialTableMissingError",
    "Database",
    "FieldPolicy",
    "GateState",
    "ReadinessGate",
    "SchemaResolver",
    "Session",
    "SessionStore",
    "ShopTokenStore",
    "StoreConfig",
    "TableCapabilities",
]
