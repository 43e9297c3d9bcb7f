"""Tests for the HTTP shell."""

import contextlib
import json
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs, urlparse

import pytest
from aiohttp import test_utils

from fakes import provider_subscription
from portal.access.tokens import EntryPath, TokenIssuer
from portal.api.server import create_app
from portal.auth.pipeline import AccessPipeline
from portal.db.models import SubscriptionStatus
from portal.errors import ProviderError
from portal.identity.discord import DiscordProfile
from portal.identity.hints import IdentityHintSet
from portal.identity.resolver import IdentityResolver
from portal.payments.linker import SubscriptionLinker


@pytest.fixture
def oauth():
    client = MagicMock()
    client.exchange_code = AsyncMock(return_value="oauth-access-token")
    client.fetch_profile = AsyncMock(
        return_value=DiscordProfile(id="D1", username="dee", email="d1@x.com", avatar_ref=None)
    )
    return client


@pytest.fixture
def pipeline(store, payments, config, oauth) -> AccessPipeline:
    return AccessPipeline(
        resolver=IdentityResolver(store, payments, config),
        linker=SubscriptionLinker(store, payments, config),
        issuer=TokenIssuer(config),
        config=config,
        oauth=oauth,
        payments=payments,
    )


@contextlib.asynccontextmanager
async def serve(pipeline, payments, config):
    app = create_app(pipeline, payments, config)
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        yield client


def redirect_params(response) -> dict:
    location = urlparse(response.headers["Location"])
    assert f"{location.scheme}://{location.netloc}" == "https://portal.example.com"
    return {key: values[0] for key, values in parse_qs(location.query).items()}


class TestRoutes:
    def test_routes_registered(self, pipeline, payments, config):
        app = create_app(pipeline, payments, config)

        routes = {
            (route.method, route.resource.canonical)
            for route in app.router.routes()
            if route.method != "HEAD"
        }

        assert routes == {
            ("GET", "/auth/discord/callback"),
            ("POST", "/auth/discord"),
            ("POST", "/auth/code"),
            ("POST", "/auth/payment"),
            ("GET", "/auth/me"),
            ("GET", "/auth/subscription"),
            ("POST", "/auth/logout"),
            ("POST", "/webhooks/stripe"),
        }


class TestDiscordCallback:
    """Browser redirect flow."""

    @pytest.mark.asyncio
    async def test_success_redirects_with_token(self, pipeline, payments, config):
        payments.add(provider_subscription(subject_id="D1"))

        async with serve(pipeline, payments, config) as client:
            response = await client.get("/auth/discord/callback?code=abc", allow_redirects=False)

        assert response.status == 302
        params = redirect_params(response)
        assert pipeline.issuer.verify(params["token"]).subject_id == "D1"
        assert json.loads(params["user"])["discordId"] == "D1"

    @pytest.mark.asyncio
    async def test_refused_authorization(self, pipeline, payments, config, oauth):
        async with serve(pipeline, payments, config) as client:
            response = await client.get(
                "/auth/discord/callback?error=access_denied", allow_redirects=False
            )

        assert redirect_params(response) == {"error": "access_denied"}
        oauth.exchange_code.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_code(self, pipeline, payments, config):
        async with serve(pipeline, payments, config) as client:
            response = await client.get("/auth/discord/callback", allow_redirects=False)

        assert redirect_params(response) == {"error": "no_code"}

    @pytest.mark.asyncio
    async def test_provider_failure(self, pipeline, payments, config, oauth):
        oauth.exchange_code.side_effect = ProviderError("discord", "invalid_grant", 400)

        async with serve(pipeline, payments, config) as client:
            response = await client.get("/auth/discord/callback?code=abc", allow_redirects=False)

        assert redirect_params(response) == {"error": "auth_failed"}

    @pytest.mark.asyncio
    async def test_no_subscription(self, pipeline, payments, config):
        async with serve(pipeline, payments, config) as client:
            response = await client.get("/auth/discord/callback?code=abc", allow_redirects=False)

        assert redirect_params(response) == {"error": "subscription_required"}


class TestJsonRoutes:
    """POST routes for API clients."""

    @pytest.mark.asyncio
    async def test_discord_login(self, pipeline, payments, config):
        payments.add(provider_subscription(subject_id="D1"))

        async with serve(pipeline, payments, config) as client:
            response = await client.post("/auth/discord", json={"code": "abc"})
            body = await response.json()

        assert response.status == 200
        assert body["user"]["discordId"] == "D1"

    @pytest.mark.asyncio
    async def test_discord_login_denied(self, pipeline, payments, config):
        async with serve(pipeline, payments, config) as client:
            response = await client.post("/auth/discord", json={"code": "abc"})
            body = await response.json()

        assert response.status == 403
        assert body["error"] == "subscription_required"

    @pytest.mark.asyncio
    async def test_discord_login_without_code(self, pipeline, payments, config):
        async with serve(pipeline, payments, config) as client:
            response = await client.post("/auth/discord", data=b"not json")

        assert response.status == 400

    @pytest.mark.asyncio
    async def test_discord_login_provider_failure(self, pipeline, payments, config, oauth):
        oauth.fetch_profile.side_effect = ProviderError("discord", "down", 503)

        async with serve(pipeline, payments, config) as client:
            response = await client.post("/auth/discord", json={"code": "abc"})

        assert response.status == 502

    @pytest.mark.asyncio
    async def test_invalid_code_link(self, pipeline, payments, config):
        async with serve(pipeline, payments, config) as client:
            response = await client.post("/auth/code", json={"verification_code": "ZZZZ9999"})
            body = await response.json()

        assert response.status == 400
        assert body["error"] == "invalid_code"

    @pytest.mark.asyncio
    async def test_code_link_with_discord_code(self, pipeline, payments, config, store, oauth):
        state = payments.add(provider_subscription(customer_email="pay@x.com"))
        paid = await pipeline.apply_payment(state)
        code = store.accounts[paid.account.id].verification_code

        async with serve(pipeline, payments, config) as client:
            response = await client.post(
                "/auth/code", json={"code": "discord-code", "verification_code": code}
            )
            body = await response.json()

        assert response.status == 200
        assert body["user"]["id"] == paid.account.id
        assert body["user"]["discordId"] == "D1"
        oauth.exchange_code.assert_awaited_once_with("discord-code")

    @pytest.mark.asyncio
    async def test_code_link_without_verification_code(self, pipeline, payments, config):
        async with serve(pipeline, payments, config) as client:
            response = await client.post("/auth/code", json={"code": "discord-code"})
            body = await response.json()

        assert response.status == 400
        assert body["error"] == "no_code"

    @pytest.mark.asyncio
    async def test_payment_login(self, pipeline, payments, config):
        payments.add(provider_subscription(client_reference_id="D1"))
        payments.sessions["cs_1"] = "sub_1"

        async with serve(pipeline, payments, config) as client:
            response = await client.post("/auth/payment", json={"session_id": "cs_1"})
            body = await response.json()

        assert response.status == 200
        claims = pipeline.issuer.verify(body["token"])
        assert claims.entry == EntryPath.POST_PAYMENT

    @pytest.mark.asyncio
    async def test_payment_login_unknown_session(self, pipeline, payments, config):
        async with serve(pipeline, payments, config) as client:
            response = await client.post("/auth/payment", json={"session_id": "cs_missing"})

        assert response.status == 404

    @pytest.mark.asyncio
    async def test_logout(self, pipeline, payments, config):
        async with serve(pipeline, payments, config) as client:
            response = await client.post("/auth/logout")

        assert response.status == 200


class TestCurrentUser:
    """Bearer re-check on /auth/me."""

    async def _token(self, pipeline, payments):
        payments.add(provider_subscription(subject_id="D1"))
        hints = IdentityHintSet(external_subject_id="D1", external_email="d1@x.com")
        outcome = await pipeline.authenticate(hints, EntryPath.DISCORD_LOGIN)
        return outcome.token

    @pytest.mark.asyncio
    async def test_valid_token(self, pipeline, payments, config):
        token = await self._token(pipeline, payments)

        async with serve(pipeline, payments, config) as client:
            response = await client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
            body = await response.json()

        assert response.status == 200
        assert body["discordId"] == "D1"

    @pytest.mark.asyncio
    async def test_missing_token(self, pipeline, payments, config):
        async with serve(pipeline, payments, config) as client:
            response = await client.get("/auth/me")

        assert response.status == 401

    @pytest.mark.asyncio
    async def test_tampered_token(self, pipeline, payments, config):
        async with serve(pipeline, payments, config) as client:
            response = await client.get("/auth/me", headers={"Authorization": "Bearer abc.def.ghi"})

        assert response.status == 401

    @pytest.mark.asyncio
    async def test_lapsed_subscription(self, pipeline, payments, config, store):
        token = await self._token(pipeline, payments)
        for record_id, record in list(store.subscriptions.items()):
            store.subscriptions[record_id] = replace(record, status=SubscriptionStatus.CANCELED)

        async with serve(pipeline, payments, config) as client:
            response = await client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
            body = await response.json()

        assert response.status == 403
        assert body["error"] == "subscription_required"


class TestSubscriptionStatus:
    """Bearer subscription read on /auth/subscription."""

    @pytest.mark.asyncio
    async def test_active_subscription(self, pipeline, payments, config):
        payments.add(provider_subscription(subject_id="D1"))
        hints = IdentityHintSet(external_subject_id="D1", external_email="d1@x.com")
        token = (await pipeline.authenticate(hints, EntryPath.DISCORD_LOGIN)).token

        async with serve(pipeline, payments, config) as client:
            response = await client.get(
                "/auth/subscription", headers={"Authorization": f"Bearer {token}"}
            )
            body = await response.json()

        assert response.status == 200
        assert body["hasSubscription"] is True
        assert body["canAccess"] is True
        assert set(body["subscription"]) == {
            "status",
            "currentPeriodStart",
            "currentPeriodEnd",
            "cancelAtPeriodEnd",
            "canceledAt",
            "gracePeriodEnd",
        }

    @pytest.mark.asyncio
    async def test_missing_token(self, pipeline, payments, config):
        async with serve(pipeline, payments, config) as client:
            response = await client.get("/auth/subscription")

        assert response.status == 401

    @pytest.mark.asyncio
    async def test_tampered_token(self, pipeline, payments, config):
        async with serve(pipeline, payments, config) as client:
            response = await client.get(
                "/auth/subscription", headers={"Authorization": "Bearer abc.def.ghi"}
            )

        assert response.status == 401


class TestWebhookEndpoint:
    @pytest.mark.asyncio
    async def test_requires_signature(self, pipeline, payments, config):
        async with serve(pipeline, payments, config) as client:
            response = await client.post("/webhooks/stripe", data=b"{}")
            text = await response.text()

        assert response.status == 400
        assert "Missing signature" in text
