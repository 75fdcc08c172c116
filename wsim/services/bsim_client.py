"""
Outbound client for bank (BSIM) OIDC and wallet APIs.

Everything the wallet asks of a bank goes through BsimClient:

  1. discover()                 — GET {issuer}/.well-known/openid-configuration
                                  (cached per issuer for the process lifetime)
  2. build_authorization_url()  — authorization-code + PKCE (S256) request with
                                  scope "openid profile email wallet:enroll"
  3. exchange_code()            — POST token endpoint, verify the ID token
                                  (signature, audience, issuer, nonce)
  4. fetch_cards()              — GET {api}/api/wallet/cards
  5. request_card_token()       — POST {api}/api/wallet/tokens

Wallet credential claim:
  A bank that granted the wallet:enroll scope puts a long-lived credential
  in the access token's "wallet_credential" claim. That token is a JWT the
  bank signs for itself, so the wallet only reads it (BankAccessTokenClaims)
  and never verifies it. An opaque access token, or one without the claim,
  yields no credential and the caller falls back to the access token.

The httpx transport is injectable so tests can stand up a fake bank with
httpx.MockTransport.
"""

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from urllib.parse import urlencode

import httpx
from jose import jwt, JWTError
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from wsim.config import settings
from wsim.services.providers import ProviderConfig

logger = logging.getLogger(__name__)

ENROLLMENT_SCOPE = "openid profile email wallet:enroll"
DEFAULT_EXPIRES_IN = 3600


class BsimClientError(Exception):
    """Raised when a bank call fails or returns something unusable."""


# ---------------------------------------------------------------------------
# Bank payloads
# ---------------------------------------------------------------------------

class OidcMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str | None = None


class BankAccessTokenClaims(BaseModel):
    """Claims the wallet reads from a bank access token (all optional)."""

    model_config = ConfigDict(extra="ignore")

    sub: str | None = None
    scope: str | None = None
    wallet_credential: str | None = None


class BsimCard(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    card_ref: str = Field(alias="cardRef")
    card_type: str = Field(alias="cardType")
    last_four: str = Field(alias="lastFour")
    cardholder_name: str = Field(alias="cardholderName")
    expiry_month: int = Field(alias="expiryMonth")
    expiry_year: int = Field(alias="expiryYear")
    is_active: bool = Field(default=True, alias="isActive")


class _CardListResponse(BaseModel):
    cards: list[BsimCard] = []


class CardTokenInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    last_four: str | None = Field(default=None, alias="lastFour")
    card_type: str | None = Field(default=None, alias="cardType")


class CardTokenResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    token: str
    token_id: str | None = Field(default=None, alias="tokenId")
    expires_at: datetime | None = Field(default=None, alias="expiresAt")
    card_info: CardTokenInfo | None = Field(default=None, alias="cardInfo")


@dataclass
class BsimTokenResponse:
    """Result of a successful code exchange."""
    access_token: str
    id_token: str
    refresh_token: str | None
    expires_in: int
    wallet_credential: str | None
    fi_user_ref: str
    email: str
    first_name: str | None = None
    last_name: str | None = None


# ---------------------------------------------------------------------------
# PKCE / state helpers
# ---------------------------------------------------------------------------

def generate_pkce() -> tuple[str, str]:
    """Return (code_verifier, code_challenge) for the S256 method."""
    verifier = secrets.token_urlsafe(32)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


def generate_state() -> str:
    return secrets.token_hex(16)


def generate_nonce() -> str:
    return secrets.token_hex(16)


def read_access_token_claims(access_token: str) -> BankAccessTokenClaims:
    """Read (without verifying) the claims of a bank access token."""
    try:
        claims = jwt.get_unverified_claims(access_token)
    except JWTError:
        return BankAccessTokenClaims()
    try:
        return BankAccessTokenClaims.model_validate(claims)
    except ValidationError:
        logger.warning("Bank access token carries malformed claims; ignoring them")
        return BankAccessTokenClaims()


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class BsimClient:
    """
    Async HTTP client for every bank the registry knows about.

    One instance is shared by the whole process (see dependencies.py) so
    discovery documents and JWKS are fetched once per issuer.
    """

    def __init__(
        self,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._http = httpx.AsyncClient(
            timeout=timeout or settings.BSIM_HTTP_TIMEOUT_SECONDS,
            transport=transport,
        )
        self._discovery: dict[str, OidcMetadata] = {}
        self._jwks: dict[str, dict] = {}

    async def aclose(self) -> None:
        await self._http.aclose()

    def clear_cache(self) -> None:
        self._discovery.clear()
        self._jwks.clear()

    async def _get_json(self, url: str, **kwargs) -> dict:
        try:
            response = await self._http.get(url, **kwargs)
        except httpx.HTTPError as exc:
            raise BsimClientError(f"Request to {url} failed: {exc}") from exc
        if response.status_code != 200:
            raise BsimClientError(f"GET {url} returned {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise BsimClientError(f"GET {url} returned invalid JSON") from exc

    # --- OIDC ---

    async def discover(self, provider: ProviderConfig) -> OidcMetadata:
        cached = self._discovery.get(provider.issuer)
        if cached is not None:
            return cached

        logger.info("Discovering OIDC configuration for %s", provider.issuer)
        url = f"{provider.issuer.rstrip('/')}/.well-known/openid-configuration"
        try:
            metadata = OidcMetadata.model_validate(await self._get_json(url))
        except ValidationError as exc:
            raise BsimClientError(f"Invalid discovery document from {provider.issuer}") from exc

        self._discovery[provider.issuer] = metadata
        return metadata

    async def build_authorization_url(
        self,
        provider: ProviderConfig,
        redirect_uri: str,
        state: str,
        nonce: str,
        code_challenge: str,
    ) -> str:
        metadata = await self.discover(provider)
        params = {
            "response_type": "code",
            "client_id": provider.client_id,
            "redirect_uri": redirect_uri,
            "scope": ENROLLMENT_SCOPE,
            "state": state,
            "nonce": nonce,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        separator = "&" if "?" in metadata.authorization_endpoint else "?"
        return f"{metadata.authorization_endpoint}{separator}{urlencode(params)}"

    async def exchange_code(
        self,
        provider: ProviderConfig,
        redirect_uri: str,
        code: str,
        code_verifier: str,
        expected_nonce: str,
    ) -> BsimTokenResponse:
        """
        Redeem an authorization code and verify the returned ID token.

        Raises:
            BsimClientError: If the token endpoint rejects the code, the ID
                token fails verification, or required claims are missing.
        """
        metadata = await self.discover(provider)

        try:
            response = await self._http.post(
                metadata.token_endpoint,
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": redirect_uri,
                    "code_verifier": code_verifier,
                },
                auth=(provider.client_id, provider.client_secret),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise BsimClientError(f"Token request failed: {exc}") from exc

        if response.status_code != 200:
            raise BsimClientError(
                f"Token exchange failed with status {response.status_code}"
            )

        try:
            tokens = response.json()
        except ValueError as exc:
            raise BsimClientError("Token endpoint returned invalid JSON") from exc
        access_token = tokens.get("access_token")
        id_token = tokens.get("id_token")
        if not access_token or not id_token:
            raise BsimClientError("Token response is missing access_token or id_token")

        claims = await self._verify_id_token(provider, metadata, id_token, access_token)
        if claims.get("nonce") != expected_nonce:
            raise BsimClientError("ID token nonce mismatch")
        if not claims.get("sub") or not claims.get("email"):
            raise BsimClientError("ID token is missing the sub or email claim")

        access_claims = read_access_token_claims(access_token)

        return BsimTokenResponse(
            access_token=access_token,
            id_token=id_token,
            refresh_token=tokens.get("refresh_token"),
            expires_in=int(tokens.get("expires_in") or DEFAULT_EXPIRES_IN),
            wallet_credential=access_claims.wallet_credential,
            fi_user_ref=claims["sub"],
            email=claims["email"],
            first_name=claims.get("given_name"),
            last_name=claims.get("family_name"),
        )

    async def _verify_id_token(
        self,
        provider: ProviderConfig,
        metadata: OidcMetadata,
        id_token: str,
        access_token: str,
    ) -> dict:
        try:
            algorithm = jwt.get_unverified_header(id_token).get("alg")
        except JWTError as exc:
            raise BsimClientError("ID token is not a JWT") from exc

        if not algorithm or algorithm == "none":
            raise BsimClientError("ID token is unsigned")

        if algorithm.startswith("HS"):
            key = provider.client_secret
        else:
            key = await self._get_jwks(metadata)

        try:
            return jwt.decode(
                id_token,
                key,
                algorithms=[algorithm],
                audience=provider.client_id,
                issuer=metadata.issuer,
                access_token=access_token,
            )
        except JWTError as exc:
            raise BsimClientError(f"ID token verification failed: {exc}") from exc

    async def _get_jwks(self, metadata: OidcMetadata) -> dict:
        cached = self._jwks.get(metadata.issuer)
        if cached is not None:
            return cached
        if not metadata.jwks_uri:
            raise BsimClientError("Issuer publishes no jwks_uri")
        jwks = await self._get_json(metadata.jwks_uri)
        self._jwks[metadata.issuer] = jwks
        return jwks

    # --- Wallet API ---

    async def fetch_cards(self, provider: ProviderConfig, credential: str) -> list[BsimCard]:
        url = f"{provider.api_base_url}/api/wallet/cards"
        logger.info("Fetching cards for %s", provider.bsim_id)
        data = await self._get_json(url, headers={"Authorization": f"Bearer {credential}"})
        try:
            return _CardListResponse.model_validate(data).cards
        except ValidationError as exc:
            raise BsimClientError("Bank returned a malformed card list") from exc

    async def request_card_token(
        self,
        provider: ProviderConfig,
        credential: str,
        card_ref: str,
        merchant_id: str,
        amount: Decimal,
        currency: str = "CAD",
    ) -> CardTokenResponse:
        """
        Ask the bank for an ephemeral, merchant-facing token for one card.

        Raises:
            BsimClientError: On any transport failure or non-2xx response.
        """
        url = f"{provider.api_base_url}/api/wallet/tokens"
        try:
            response = await self._http.post(
                url,
                json={
                    "cardId": card_ref,
                    "merchantId": merchant_id,
                    "amount": float(amount),
                    "currency": currency or "CAD",
                },
                headers={"Authorization": f"Bearer {credential}"},
            )
        except httpx.HTTPError as exc:
            raise BsimClientError(f"Card token request failed: {exc}") from exc

        if not response.is_success:
            raise BsimClientError(
                f"Card token request returned {response.status_code}"
            )
        try:
            return CardTokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise BsimClientError("Bank returned a malformed card token") from exc
