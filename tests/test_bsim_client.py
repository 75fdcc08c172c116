"""
Tests for BsimClient against the in-process FakeBank.

These drive the client directly (no API) to pin down discovery caching,
the authorization URL, ID token verification and the wallet API calls.
"""

from decimal import Decimal
from urllib.parse import parse_qsl, urlsplit

import httpx
import pytest

from wsim.services.bsim_client import (
    BsimClient,
    BsimClientError,
    generate_pkce,
    read_access_token_claims,
)

REDIRECT_URI = "http://localhost:3003/api/enrollment/callback/test-bank"


@pytest.fixture
def provider(registry):
    return registry.get("test-bank")


async def _authorize(bsim_client, bank, provider):
    verifier, challenge = generate_pkce()
    auth_url = await bsim_client.build_authorization_url(
        provider, REDIRECT_URI, "state-1", "nonce-1", challenge
    )
    code, _ = bank.authorize(auth_url)
    return code, verifier


class TestAuthorizationUrl:

    async def test_url_parameters(self, bsim_client, provider):
        verifier, challenge = generate_pkce()
        auth_url = await bsim_client.build_authorization_url(
            provider, REDIRECT_URI, "state-1", "nonce-1", challenge
        )
        parts = urlsplit(auth_url)
        params = dict(parse_qsl(parts.query))

        assert f"{parts.scheme}://{parts.netloc}{parts.path}" == "https://auth.testbank.ca/auth"
        assert params["response_type"] == "code"
        assert params["client_id"] == "wsim-wallet"
        assert params["redirect_uri"] == REDIRECT_URI
        assert params["scope"] == "openid profile email wallet:enroll"
        assert params["state"] == "state-1"
        assert params["nonce"] == "nonce-1"
        assert params["code_challenge"] == challenge
        assert params["code_challenge_method"] == "S256"

    async def test_discovery_is_cached(self, bank, provider):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return bank.handler(request)

        client = BsimClient(transport=httpx.MockTransport(handler))
        try:
            await client.discover(provider)
            await client.discover(provider)
        finally:
            await client.aclose()
        assert calls == ["/.well-known/openid-configuration"]

    async def test_discovery_failure(self, provider):
        client = BsimClient(transport=httpx.MockTransport(lambda r: httpx.Response(503)))
        try:
            with pytest.raises(BsimClientError):
                await client.discover(provider)
        finally:
            await client.aclose()


class TestExchangeCode:

    async def test_successful_exchange(self, bsim_client, bank, provider):
        code, verifier = await _authorize(bsim_client, bank, provider)
        tokens = await bsim_client.exchange_code(
            provider, REDIRECT_URI, code, verifier, "nonce-1"
        )
        assert tokens.email == "alice@example.com"
        assert tokens.fi_user_ref == "fi-user-1"
        assert tokens.first_name == "Alice"
        assert tokens.last_name == "Liddell"
        assert tokens.wallet_credential == "bank-wallet-credential"
        assert tokens.refresh_token == "bank-refresh-token"
        assert tokens.expires_in == 3600

    async def test_nonce_mismatch(self, bsim_client, bank, provider):
        code, verifier = await _authorize(bsim_client, bank, provider)
        with pytest.raises(BsimClientError, match="nonce"):
            await bsim_client.exchange_code(
                provider, REDIRECT_URI, code, verifier, "another-nonce"
            )

    async def test_wrong_pkce_verifier(self, bsim_client, bank, provider):
        code, _ = await _authorize(bsim_client, bank, provider)
        with pytest.raises(BsimClientError):
            await bsim_client.exchange_code(
                provider, REDIRECT_URI, code, "not-the-verifier", "nonce-1"
            )

    async def test_id_token_signed_with_wrong_key(self, bsim_client, bank, provider):
        code, verifier = await _authorize(bsim_client, bank, provider)
        impostor = provider.model_copy(update={"client_secret": "some-other-secret"})
        with pytest.raises(BsimClientError, match="verification"):
            await bsim_client.exchange_code(
                impostor, REDIRECT_URI, code, verifier, "nonce-1"
            )


class TestWalletApi:

    async def test_fetch_cards(self, bsim_client, provider):
        cards = await bsim_client.fetch_cards(provider, "bank-wallet-credential")
        assert [c.card_ref for c in cards] == ["card-1", "card-2"]
        assert cards[0].last_four == "4242"
        assert cards[0].is_active is True

    async def test_fetch_cards_failure(self, bsim_client, bank, provider):
        bank.cards_status = 500
        with pytest.raises(BsimClientError):
            await bsim_client.fetch_cards(provider, "bank-wallet-credential")

    async def test_request_card_token(self, bsim_client, bank, provider):
        token = await bsim_client.request_card_token(
            provider, "bank-wallet-credential", "card-1", "test-merchant", Decimal("25.50"), "CAD"
        )
        assert token.token == "ctok_ephemeral_123"
        assert token.card_info.last_four == "4242"

        sent = bank.card_token_requests[-1]
        assert sent["authorization"] == "Bearer bank-wallet-credential"
        assert sent["body"] == {
            "cardId": "card-1",
            "merchantId": "test-merchant",
            "amount": 25.5,
            "currency": "CAD",
        }

    async def test_request_card_token_declined(self, bsim_client, bank, provider):
        bank.card_token_status = 402
        with pytest.raises(BsimClientError):
            await bsim_client.request_card_token(
                provider, "bank-wallet-credential", "card-1", "test-merchant", Decimal("10")
            )


class TestAccessTokenClaims:

    def test_opaque_token_has_no_claims(self):
        claims = read_access_token_claims("opaque-access-token")
        assert claims.wallet_credential is None
        assert claims.sub is None
