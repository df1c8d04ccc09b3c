"""
Credential and user-context suppliers.

The pipeline never performs OAuth itself. Provider tokens are written to
provider_connections by the account-linking service and are expected to be
valid when read; user_profiles holds the role/industry/VIP context that is
embedded in analysis prompts.
"""

from datetime import UTC, datetime
from typing import Protocol

from inbox_triage.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one
from inbox_triage.db.pool import DatabasePoolManager
from inbox_triage.errors import StorageError
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.models.domain.analysis_domain import UserContext
from inbox_triage.models.domain.message_domain import SUPPORTED_PROVIDERS, ProviderCredentials
from inbox_triage.services.cache.cache_service import UserProfileCache

logger = get_logger(__name__)


class CredentialSupplier(Protocol):
    async def get_credentials(self, user_id: str) -> list[ProviderCredentials]: ...


class UserContextSupplier(Protocol):
    async def get_user_context(self, user_id: str) -> UserContext: ...


SUPPLIER_SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS provider_connections (
        user_id TEXT NOT NULL,
        provider TEXT NOT NULL,
        access_token TEXT NOT NULL,
        expires_at TIMESTAMPTZ,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (user_id, provider)
    );

    CREATE TABLE IF NOT EXISTS user_profiles (
        user_id TEXT PRIMARY KEY,
        role TEXT,
        industry TEXT,
        preferences JSONB NOT NULL DEFAULT '[]',
        vip_contacts JSONB NOT NULL DEFAULT '[]',
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
"""


async def ensure_supplier_schema(pool: DatabasePoolManager) -> None:
    try:
        for statement in filter(None, (s.strip() for s in SUPPLIER_SCHEMA_SQL.split(";"))):
            await execute_query(pool, statement)
    except DatabaseError as e:
        raise StorageError(f"ensure_supplier_schema failed: {e}", operation="ensure_schema") from e


class DatabaseCredentialSupplier:
    def __init__(self, pool: DatabasePoolManager):
        self.pool = pool

    async def get_credentials(self, user_id: str) -> list[ProviderCredentials]:
        query = """
            SELECT provider, access_token, expires_at
            FROM provider_connections
            WHERE user_id = %s
              AND is_active = TRUE
              AND (expires_at IS NULL OR expires_at > NOW())
            ORDER BY provider
        """
        try:
            rows = await fetch_all(self.pool, query, (user_id,))
        except DatabaseError as e:
            raise StorageError(f"Failed to load provider credentials: {e}", operation="get_credentials") from e

        credentials = [
            ProviderCredentials(
                provider=row["provider"],
                access_token=row["access_token"],
                user_id=user_id,
                expires_at=row.get("expires_at"),
            )
            for row in rows
            if row["provider"] in SUPPORTED_PROVIDERS
        ]
        logger.debug("Credentials resolved", user_id=user_id, providers=[c.provider for c in credentials])
        return credentials


class DatabaseUserContextSupplier:
    """Reads user_profiles through the user-profile cache. Missing rows get the default context."""

    def __init__(self, pool: DatabasePoolManager, profile_cache: UserProfileCache):
        self.pool = pool
        self.profile_cache = profile_cache

    async def get_user_context(self, user_id: str) -> UserContext:
        cached = await self.profile_cache.get(user_id)
        if cached is not None:
            return cached

        query = """
            SELECT role, industry, preferences, vip_contacts
            FROM user_profiles
            WHERE user_id = %s
        """
        try:
            row = await fetch_one(self.pool, query, (user_id,))
        except DatabaseError as e:
            # Prompts degrade to the default context rather than failing the job
            logger.warning("User profile lookup failed", user_id=user_id, error=str(e))
            return UserContext()

        context = UserContext.from_dict(row)
        await self.profile_cache.set(user_id, context)
        return context


class StaticCredentialSupplier:
    """Credentials held in memory, keyed by user id."""

    def __init__(self, credentials: dict[str, list[ProviderCredentials]] | None = None):
        self._credentials = credentials or {}

    def register(self, credentials: ProviderCredentials) -> None:
        bucket = self._credentials.setdefault(credentials.user_id or "", [])
        bucket[:] = [c for c in bucket if c.provider != credentials.provider]
        bucket.append(credentials)

    async def get_credentials(self, user_id: str) -> list[ProviderCredentials]:
        now = datetime.now(UTC)
        return [c for c in self._credentials.get(user_id, []) if not c.is_expired(now)]


class StaticUserContextSupplier:
    def __init__(self, contexts: dict[str, UserContext] | None = None):
        self._contexts = contexts or {}

    async def get_user_context(self, user_id: str) -> UserContext:
        return self._contexts.get(user_id) or UserContext()
