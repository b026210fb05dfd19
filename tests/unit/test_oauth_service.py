"""
Unit tests for the OAuth service: connect flow, refresh ahead of expiry, revoke
"""
import asyncio
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from pos_sync.core.models import IntegrationState, TokenSet, utcnow
from pos_sync.services.oauth_service import OAuthService, hash_state
from pos_sync.utils.config import OAuthSettings
from pos_sync.utils.exceptions import (
    AuthorizationExpired, InvalidGrant, PermanentProviderError, RefreshFailed,
    TransientProviderError,
)


@pytest.fixture
def oauth_service(provider_config, repository, fake_adapter):
    return OAuthService(provider_config, repository, fake_adapter,
                        settings=OAuthSettings(refresh_margin_seconds=300, state_ttl_seconds=600))


def state_from(url):
    return parse_qs(urlparse(url).query)["state"][0]


class TestConnectFlow:

    def test_build_authorization_url(self, oauth_service, repository):
        url, state = oauth_service.build_authorization_url("tenant-1")

        assert state_from(url) == state
        assert len(state) >= 32
        assert repository.has_pending_authorization("tenant-1", "square")
        assert oauth_service.connection_state("tenant-1") == IntegrationState.AUTHORIZING

    async def test_complete_authorization(self, oauth_service, repository, fake_adapter):
        _, state = oauth_service.build_authorization_url("tenant-1")

        integration = await oauth_service.complete_authorization("code-1", state, location_id="L-1")

        assert integration.tenant_id == "tenant-1"
        assert integration.merchant_id == "M-1"
        assert integration.location_id == "L-1"
        assert repository.get_token_set(integration).access_token == "new-access"
        assert fake_adapter.access_token == "new-access"
        assert oauth_service.connection_state("tenant-1") == IntegrationState.CONNECTED

    async def test_state_is_single_use(self, oauth_service):
        _, state = oauth_service.build_authorization_url("tenant-1")
        await oauth_service.complete_authorization("code-1", state)

        with pytest.raises(AuthorizationExpired):
            await oauth_service.complete_authorization("code-1", state)

    async def test_unknown_state(self, oauth_service, fake_adapter):
        with pytest.raises(AuthorizationExpired):
            await oauth_service.complete_authorization("code-1", "forged")

        assert fake_adapter.calls.get("exchange") is None

    async def test_expired_state(self, provider_config, repository, fake_adapter):
        now = utcnow()
        clock = {"now": now}
        service = OAuthService(provider_config, repository, fake_adapter,
                               settings=OAuthSettings(state_ttl_seconds=60),
                               clock=lambda: clock["now"])
        _, state = service.build_authorization_url("tenant-1")

        clock["now"] = now + timedelta(seconds=61)

        with pytest.raises(AuthorizationExpired):
            await service.complete_authorization("code-1", state)
        assert service.abandon_expired_authorizations() == 1
        assert service.connection_state("tenant-1") == IntegrationState.DISCONNECTED

    async def test_rejected_code(self, oauth_service, fake_adapter):
        fake_adapter.errors["exchange"] = [PermanentProviderError("bad code", status_code=400)]
        _, state = oauth_service.build_authorization_url("tenant-1")

        with pytest.raises(InvalidGrant):
            await oauth_service.complete_authorization("reused", state)

    def test_only_state_hash_is_stored(self, oauth_service, db_session):
        from pos_sync.database.models import OAuthAuthorization

        _, state = oauth_service.build_authorization_url("tenant-1")
        row = db_session.query(OAuthAuthorization).one()

        assert row.state_hash == hash_state(state)
        assert row.state_hash != state


class TestEnsureFreshToken:
    """Refresh happens only inside the margin"""

    async def test_no_refresh_when_far_from_expiry(self, oauth_service, make_integration, fake_adapter):
        integration = make_integration(expires_in=timedelta(minutes=10))

        token_set = await oauth_service.ensure_fresh_token(integration)

        assert token_set.access_token == "access-1"
        assert fake_adapter.calls.get("refresh") is None
        assert fake_adapter.access_token == "access-1"

    async def test_refresh_inside_margin(self, oauth_service, make_integration, fake_adapter,
                                         repository):
        integration = make_integration(expires_in=timedelta(minutes=2))

        token_set = await oauth_service.ensure_fresh_token(integration)

        assert token_set.access_token == "new-access"
        assert fake_adapter.calls["refresh"] == 1
        assert repository.get_token_set(integration).refresh_token == "new-refresh"
        assert integration.last_refreshed_at is not None

    async def test_concurrent_callers_share_one_refresh(self, oauth_service, make_integration,
                                                        fake_adapter):
        integration = make_integration(expires_in=timedelta(minutes=2))

        results = await asyncio.gather(*(oauth_service.ensure_fresh_token(integration)
                                         for _ in range(5)))

        assert fake_adapter.calls["refresh"] == 1
        assert {r.access_token for r in results} == {"new-access"}

    async def test_rejected_refresh_deactivates(self, oauth_service, make_integration, fake_adapter,
                                                repository):
        integration = make_integration(expires_in=timedelta(minutes=1))
        fake_adapter.errors["refresh"] = [PermanentProviderError("invalid_grant", status_code=401)]

        with pytest.raises(RefreshFailed):
            await oauth_service.ensure_fresh_token(integration)

        assert integration.is_active is False
        assert repository.get_active_integration("tenant-1", "square") is None

    async def test_transient_refresh_error_keeps_integration(self, oauth_service, make_integration,
                                                             fake_adapter):
        integration = make_integration(expires_in=timedelta(minutes=1))
        fake_adapter.errors["refresh"] = [TransientProviderError("503", status_code=503)]

        with pytest.raises(TransientProviderError):
            await oauth_service.ensure_fresh_token(integration)

        assert integration.is_active is True

    async def test_missing_refresh_token(self, oauth_service, make_integration):
        integration = make_integration(expires_in=timedelta(minutes=1), refresh_token=None)

        with pytest.raises(RefreshFailed):
            await oauth_service.ensure_fresh_token(integration)
        assert integration.is_active is False

    async def test_inactive_integration(self, oauth_service, integration, repository):
        repository.deactivate_integration(integration, "test")

        with pytest.raises(RefreshFailed):
            await oauth_service.ensure_fresh_token(integration)

    def test_token_expiring_state(self, oauth_service, make_integration):
        make_integration(expires_in=timedelta(minutes=2))

        assert oauth_service.connection_state("tenant-1") == IntegrationState.TOKEN_EXPIRING


class TestRevoke:

    async def test_revoke_deactivates(self, oauth_service, integration, fake_adapter):
        await oauth_service.revoke(integration)

        assert fake_adapter.calls["revoke"] == 1
        assert integration.is_active is False
        assert oauth_service.connection_state("tenant-1") == IntegrationState.DISCONNECTED

    async def test_revoke_is_best_effort(self, oauth_service, integration, fake_adapter):
        fake_adapter.errors["revoke"] = [TransientProviderError("timeout")]

        await oauth_service.revoke(integration)

        assert integration.is_active is False

    async def test_reconnect_after_revoke(self, oauth_service, integration, repository):
        await oauth_service.revoke(integration)
        _, state = oauth_service.build_authorization_url("tenant-1")

        reconnected = await oauth_service.complete_authorization("code-2", state)

        assert reconnected.id != integration.id
        assert repository.get_active_integration("tenant-1", "square").id == reconnected.id


class TestTokenSetMargin:

    def test_margin_boundary(self):
        now = utcnow()
        token = TokenSet("a", "r", now + timedelta(minutes=5))

        assert token.expires_within(timedelta(minutes=5), now=now)
