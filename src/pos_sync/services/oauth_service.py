"""
OAuth Service.

Owns the credential lifecycle of one provider: authorization URL and state,
code exchange, refresh ahead of expiry, and revocation. Provider settings
are passed in explicitly; nothing is read from process-wide state.
"""

import asyncio
import hashlib
import secrets
import weakref
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Set, Tuple

from pos_sync.core.models import IntegrationState, TokenSet, as_utc, utcnow
from pos_sync.database.models import Integration
from pos_sync.database.repository import IntegrationRepository
from pos_sync.monitoring.prometheus_metrics import get_metrics
from pos_sync.providers.base import PosAdapter
from pos_sync.utils.config import OAuthSettings, ProviderConfig
from pos_sync.utils.exceptions import (
    AuthorizationExpired, InvalidGrant, PermanentProviderError, PosSyncError, RefreshFailed,
)
from pos_sync.utils.logger import get_logger

logger = get_logger(__name__)

# Refresh locks are per event loop: worker tasks each run in their own loop
_refresh_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[str, asyncio.Lock]]" = \
    weakref.WeakKeyDictionary()
_refreshing: Set[str] = set()


def _refresh_lock(integration_id) -> asyncio.Lock:
    locks = _refresh_locks.setdefault(asyncio.get_running_loop(), {})
    return locks.setdefault(str(integration_id), asyncio.Lock())


def hash_state(state: str) -> str:
    return hashlib.sha256(state.encode("utf-8")).hexdigest()


class OAuthService:
    """
    Authorization-code flow and token upkeep for one provider.

    Args:
        provider_config: Client credentials and environment of the provider
        repository: Integration persistence
        adapter: Provider adapter used for the token endpoints
        settings: Refresh margin and state lifetime
        clock: Returns the current aware UTC datetime
    """

    def __init__(self, provider_config: ProviderConfig, repository: IntegrationRepository,
                 adapter: PosAdapter, settings: Optional[OAuthSettings] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.config = provider_config
        self.repository = repository
        self.adapter = adapter
        self.settings = settings or OAuthSettings()
        self._clock = clock or utcnow
        self.metrics = get_metrics()

    @property
    def provider(self) -> str:
        return self.config.provider

    @property
    def refresh_margin(self) -> timedelta:
        return timedelta(seconds=self.settings.refresh_margin_seconds)

    def _now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Connect flow
    # ------------------------------------------------------------------

    def build_authorization_url(self, tenant_id: str) -> Tuple[str, str]:
        """
        Start the connect flow for a tenant.

        Returns:
            (authorization URL, opaque state to be round-tripped by the provider)
        """
        state = secrets.token_urlsafe(32)
        expires_at = self._now() + timedelta(seconds=self.settings.state_ttl_seconds)
        self.repository.create_authorization_state(tenant_id, self.provider, hash_state(state), expires_at)

        logger.info(f"Started {self.provider} authorization for tenant {tenant_id}")
        return self.adapter.authorization_url(state), state

    async def exchange_code(self, code: str) -> TokenSet:
        """
        Exchange a one-time authorization code for tokens.

        Raises:
            InvalidGrant: The provider rejected the code (expired or already used)
        """
        try:
            token_set = await self.adapter.exchange_code(code)
        except PermanentProviderError as e:
            logger.warning(f"{self.provider} rejected authorization code: {e.message}")
            raise InvalidGrant("Authorization code is invalid, expired or already used",
                               {"provider": self.provider, "status_code": e.status_code}) from e

        logger.info(f"Exchanged {self.provider} authorization code "
                    f"(merchant {token_set.merchant_id or 'unknown'})")
        return token_set

    async def complete_authorization(self, code: str, state: str,
                                     location_id: Optional[str] = None) -> Integration:
        """
        Finish the connect flow from the provider callback.

        Raises:
            AuthorizationExpired: Unknown, expired or already used state
            InvalidGrant: Code rejected by the provider
        """
        authorization = self.repository.consume_authorization_state(
            hash_state(state), self.provider, now=self._now())
        if authorization is None:
            raise AuthorizationExpired("Authorization state is unknown, expired or already used",
                                       {"provider": self.provider})

        token_set = await self.exchange_code(code)
        integration = self.repository.create_integration(
            authorization.tenant_id, self.provider, token_set,
            environment=self.config.environment,
            location_id=location_id,
        )
        self.adapter.set_access_token(token_set.access_token)
        self.adapter.merchant_id = integration.merchant_id

        logger.info(f"Connected {self.provider} for tenant {authorization.tenant_id} "
                    f"(integration {integration.id})")
        return integration

    def abandon_expired_authorizations(self) -> int:
        """Drop pending authorization states whose callback never arrived."""
        deleted = self.repository.delete_expired_authorization_states(now=self._now())
        if deleted:
            logger.info(f"Abandoned {deleted} expired authorization state(s)")
        return deleted

    # ------------------------------------------------------------------
    # Token upkeep
    # ------------------------------------------------------------------

    async def ensure_fresh_token(self, integration: Integration) -> TokenSet:
        """
        Return a token that stays valid for at least the refresh margin.

        Concurrent callers for the same Integration share one refresh.

        Raises:
            RefreshFailed: The Integration is inactive or its refresh token
                was rejected; the Integration is deactivated.
            TransientProviderError: The refresh endpoint failed transiently.
        """
        if not integration.is_active:
            raise RefreshFailed("Integration is disconnected; reconnect required",
                                {"integration_id": str(integration.id)})

        token_set = self.repository.get_token_set(integration)
        if not token_set.expires_within(self.refresh_margin, self._now()):
            self.adapter.set_access_token(token_set.access_token)
            return token_set

        key = str(integration.id)
        async with _refresh_lock(key):
            # Another caller may have refreshed while this one waited
            self.repository.reload_integration(integration)
            if not integration.is_active:
                raise RefreshFailed("Integration was disconnected during refresh",
                                    {"integration_id": key})
            token_set = self.repository.get_token_set(integration)
            if not token_set.expires_within(self.refresh_margin, self._now()):
                self.adapter.set_access_token(token_set.access_token)
                return token_set

            _refreshing.add(key)
            try:
                return await self._refresh(integration, token_set)
            finally:
                _refreshing.discard(key)

    async def _refresh(self, integration: Integration, token_set: TokenSet) -> TokenSet:
        if not token_set.refresh_token:
            self.repository.deactivate_integration(integration, "refresh_token_missing")
            self.metrics.track_token_refresh(self.provider, "rejected")
            raise RefreshFailed("No refresh token stored; reconnect required",
                                {"integration_id": str(integration.id)})

        logger.info(f"Refreshing {self.provider} token for integration {integration.id} "
                    f"(expires {token_set.expires_at})")
        try:
            refreshed = await self.adapter.refresh_token(token_set.refresh_token)
        except PermanentProviderError as e:
            self.repository.deactivate_integration(integration, "refresh_token_rejected")
            self.metrics.track_token_refresh(self.provider, "rejected")
            logger.error(f"{self.provider} rejected refresh token for integration {integration.id}")
            raise RefreshFailed("Refresh token rejected by provider; reconnect required",
                                {"integration_id": str(integration.id),
                                 "status_code": e.status_code}) from e
        except PosSyncError:
            self.metrics.track_token_refresh(self.provider, "error")
            raise

        self.repository.save_tokens(integration, refreshed)
        self.adapter.set_access_token(refreshed.access_token)
        self.metrics.track_token_refresh(self.provider, "success")
        logger.info(f"Refreshed {self.provider} token for integration {integration.id}, "
                    f"new expiry {refreshed.expires_at}")
        return refreshed

    async def revoke(self, integration: Integration) -> None:
        """Revoke remotely (best effort) and deactivate locally."""
        try:
            token_set = self.repository.get_token_set(integration)
            await self.adapter.revoke_token(token_set.access_token)
            logger.info(f"Revoked {self.provider} token for integration {integration.id}")
        except Exception as e:
            logger.warning(f"Remote revoke failed for integration {integration.id}, "
                           f"deactivating anyway: {e}")

        self.repository.deactivate_integration(integration, "disconnected")

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def connection_state(self, tenant_id: str) -> IntegrationState:
        integration = self.repository.get_active_integration(tenant_id, self.provider)
        if integration is not None:
            if str(integration.id) in _refreshing:
                return IntegrationState.REFRESHING
            expires_at = as_utc(integration.token_expires_at)
            if expires_at is not None and expires_at - self._now() <= self.refresh_margin:
                return IntegrationState.TOKEN_EXPIRING
            return IntegrationState.CONNECTED

        if self.repository.has_pending_authorization(tenant_id, self.provider, now=self._now()):
            return IntegrationState.AUTHORIZING
        return IntegrationState.DISCONNECTED
