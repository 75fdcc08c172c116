"""
Test fixtures for the wallet API test suite.

This module provides shared fixtures used across all test files:

  - db_engine / db_session: Fresh in-memory SQLite database for each test
  - bank: FakeBank, an in-process OIDC provider + wallet API for "test-bank"
  - client: Async HTTP test client with the database, the bank client and
    the correlation stores injected
  - mobile_user / second_mobile_user: Accounts registered through the real
    /api/mobile/auth/register endpoint, with their Bearer headers
  - merchant: A merchant whose API key is MERCHANT_API_KEY

Key design decisions:
  - Settings are read at import time, so the required secrets are put in
    the environment before anything from wsim is imported.
  - The bank is not mocked at the function level: BsimClient runs for real
    on top of httpx.MockTransport, so discovery, PKCE, ID token
    verification and the card APIs are all exercised.
  - The get_db override mirrors the real one, including committing on
    domain errors (lazy expiry must survive the error that reports it).
"""

import base64
import hashlib
import json
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qsl, urlsplit

TEST_BSIM_ID = "test-bank"
TEST_ISSUER = "https://auth.testbank.ca"
TEST_API_URL = "https://api.testbank.ca"
TEST_CLIENT_ID = "wsim-wallet"
TEST_CLIENT_SECRET = "test-bank-client-secret"

TEST_PROVIDERS = [
    {
        "bsimId": TEST_BSIM_ID,
        "name": "Test Bank",
        "issuer": TEST_ISSUER,
        "clientId": TEST_CLIENT_ID,
        "clientSecret": TEST_CLIENT_SECRET,
        "apiUrl": TEST_API_URL,
        "logoUrl": "https://testbank.ca/logo.png",
    }
]

os.environ.setdefault("SECRET_KEY", "test-session-secret")
os.environ.setdefault("MOBILE_JWT_SECRET", "test-mobile-jwt-secret")
os.environ.setdefault(
    "ENCRYPTION_KEY",
    base64.urlsafe_b64encode(b"wsim-test-key-0123456789abcdef!!").decode(),
)
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("BSIM_PROVIDERS", json.dumps(TEST_PROVIDERS))

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import AsyncClient, ASGITransport  # noqa: E402
from jose import jwt  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from wsim.database import Base, get_db  # noqa: E402
from wsim.dependencies import (  # noqa: E402
    get_bsim_client,
    get_enrollment_store,
    get_login_challenge_store,
    get_provider_registry,
)
from wsim.exceptions import WalletAPIError  # noqa: E402
from wsim.main import app  # noqa: E402
from wsim.models.card import WalletCard  # noqa: E402
from wsim.models.enrollment import BsimEnrollment  # noqa: E402
from wsim.models.merchant import Merchant  # noqa: E402
from wsim.security import encrypt, generate_wallet_card_token  # noqa: E402
from wsim.services.bsim_client import BsimClient  # noqa: E402
from wsim.services.correlation_store import InMemoryCorrelationStore  # noqa: E402
from wsim.services.providers import ProviderRegistry, parse_providers  # noqa: E402


# In-memory SQLite for fast, isolated tests
TEST_DATABASE_URL = "sqlite+aiosqlite://"

MERCHANT_API_KEY = "test-api-key-123"
MERCHANT_HEADERS = {"x-api-key": MERCHANT_API_KEY}


# ---------------------------------------------------------------------------
# Fake bank
# ---------------------------------------------------------------------------

class FakeBank:
    """
    In-process stand-in for a BSIM bank: discovery, token endpoint (with
    PKCE and an HS256 ID token), card list and card-token issuance.

    Tests flip the *_status attributes to simulate bank failures.
    """

    def __init__(self):
        self.sub = "fi-user-1"
        self.email = "alice@example.com"
        self.given_name = "Alice"
        self.family_name = "Liddell"
        self.wallet_credential = "bank-wallet-credential"
        self.cards = [
            {
                "cardRef": "card-1",
                "cardType": "VISA",
                "lastFour": "4242",
                "cardholderName": "Alice Liddell",
                "expiryMonth": 12,
                "expiryYear": 2030,
            },
            {
                "cardRef": "card-2",
                "cardType": "MC",
                "lastFour": "5555",
                "cardholderName": "Alice Liddell",
                "expiryMonth": 6,
                "expiryYear": 2029,
            },
        ]
        self.cards_status = 200
        self.card_token_status = 200
        self.token_status = 200
        self.nonce: str | None = None
        self.code_challenge: str | None = None
        self.card_token_requests: list[dict] = []

    def authorize(self, auth_url: str) -> tuple[str, str]:
        """
        Play the user's visit to the bank's authorization page.

        Remembers the nonce and PKCE challenge and returns (code, state)
        as the bank would send them to the callback.
        """
        params = dict(parse_qsl(urlsplit(auth_url).query))
        self.nonce = params["nonce"]
        self.code_challenge = params["code_challenge"]
        return "auth-code-123", params["state"]

    def id_token(self) -> str:
        now = datetime.now(timezone.utc)
        claims = {
            "iss": TEST_ISSUER,
            "aud": TEST_CLIENT_ID,
            "sub": self.sub,
            "email": self.email,
            "given_name": self.given_name,
            "family_name": self.family_name,
            "nonce": self.nonce,
            "iat": now,
            "exp": now + timedelta(minutes=5),
        }
        return jwt.encode(claims, TEST_CLIENT_SECRET, algorithm="HS256")

    def handler(self, request: httpx.Request) -> httpx.Response:
        host, path = request.url.host, request.url.path

        if host == "auth.testbank.ca" and path == "/.well-known/openid-configuration":
            return httpx.Response(200, json={
                "issuer": TEST_ISSUER,
                "authorization_endpoint": f"{TEST_ISSUER}/auth",
                "token_endpoint": f"{TEST_ISSUER}/token",
                "jwks_uri": f"{TEST_ISSUER}/jwks",
            })

        if host == "auth.testbank.ca" and path == "/token":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            form = dict(parse_qsl(request.content.decode()))
            digest = hashlib.sha256(form.get("code_verifier", "").encode()).digest()
            challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode()
            if challenge != self.code_challenge:
                return httpx.Response(400, json={"error": "invalid_grant"})
            access_token = jwt.encode(
                {"sub": self.sub, "wallet_credential": self.wallet_credential},
                "bank-signing-key",
                algorithm="HS256",
            )
            return httpx.Response(200, json={
                "access_token": access_token,
                "id_token": self.id_token(),
                "refresh_token": "bank-refresh-token",
                "expires_in": 3600,
                "token_type": "Bearer",
            })

        if host == "api.testbank.ca" and path == "/api/wallet/cards":
            if self.cards_status != 200:
                return httpx.Response(self.cards_status)
            return httpx.Response(200, json={"cards": self.cards})

        if host == "api.testbank.ca" and path == "/api/wallet/tokens":
            self.card_token_requests.append({
                "body": json.loads(request.content),
                "authorization": request.headers.get("authorization"),
            })
            if self.card_token_status != 200:
                return httpx.Response(self.card_token_status, json={"error": "declined"})
            return httpx.Response(200, json={
                "token": "ctok_ephemeral_123",
                "tokenId": "tok-1",
                "cardInfo": {"lastFour": "4242", "cardType": "VISA"},
            })

        return httpx.Response(404)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine():
    """Create a fresh async engine with all tables for each test."""
    engine = create_async_engine(TEST_DATABASE_URL, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine):
    """Provide an async session bound to the test engine."""
    async_session = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with async_session() as session:
        yield session


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

@pytest.fixture
def bank():
    return FakeBank()


@pytest.fixture
def registry():
    return ProviderRegistry(parse_providers(json.dumps(TEST_PROVIDERS)))


@pytest.fixture
def enrollment_store():
    return InMemoryCorrelationStore("enrollment-test")


@pytest.fixture
def login_store():
    return InMemoryCorrelationStore("login-test")


@pytest_asyncio.fixture
async def bsim_client(bank):
    client = BsimClient(transport=httpx.MockTransport(bank.handler))
    yield client
    await client.aclose()


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(db_engine, registry, bsim_client, enrollment_store, login_store):
    """
    Async HTTP test client with the test database and services injected.
    """
    async_session = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async def override_get_db():
        async with async_session() as session:
            try:
                yield session
                await session.commit()
            except WalletAPIError:
                await session.commit()
                raise
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_provider_registry] = lambda: registry
    app.dependency_overrides[get_bsim_client] = lambda: bsim_client
    app.dependency_overrides[get_enrollment_store] = lambda: enrollment_store
    app.dependency_overrides[get_login_challenge_store] = lambda: login_store

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Users, cards and merchants
# ---------------------------------------------------------------------------

@dataclass
class MobileUser:
    id: uuid.UUID
    email: str
    device_id: str
    access_token: str
    refresh_token: str

    @property
    def headers(self) -> dict:
        return {"Authorization": f"Bearer {self.access_token}"}


async def register_mobile_user(client, email: str, device_id: str) -> MobileUser:
    response = await client.post(
        "/api/mobile/auth/register",
        json={
            "email": email,
            "name": "Test User",
            "device_id": device_id,
            "device_name": "Test Phone",
            "platform": "ios",
        },
    )
    assert response.status_code == 201, f"Register failed: {response.text}"
    data = response.json()
    return MobileUser(
        id=uuid.UUID(data["user"]["id"]),
        email=email,
        device_id=device_id,
        access_token=data["tokens"]["access_token"],
        refresh_token=data["tokens"]["refresh_token"],
    )


@pytest_asyncio.fixture
async def mobile_user(client):
    return await register_mobile_user(client, "mobile@example.com", "device-1")


@pytest_asyncio.fixture
async def second_mobile_user(client):
    return await register_mobile_user(client, "other@example.com", "device-2")


async def add_cards(
    db_session: AsyncSession,
    user_id: uuid.UUID,
    count: int = 2,
    bsim_id: str = TEST_BSIM_ID,
) -> tuple[BsimEnrollment, list[WalletCard]]:
    """
    Insert an enrollment and `count` active cards directly.

    The first card is the default; each later card is created a minute
    after the previous one so "newest" is well defined.
    """
    enrollment = BsimEnrollment(
        user_id=user_id,
        bsim_id=bsim_id,
        bsim_issuer=TEST_ISSUER,
        fi_user_ref=f"fi-{user_id}",
        wallet_credential=encrypt("bank-wallet-credential"),
    )
    db_session.add(enrollment)
    await db_session.flush()

    base = datetime.now(timezone.utc) - timedelta(hours=1)
    cards = []
    for i in range(count):
        card = WalletCard(
            user_id=user_id,
            enrollment_id=enrollment.id,
            card_type="VISA",
            last_four=f"{4242 + i:04d}",
            cardholder_name="Test User",
            expiry_month=12,
            expiry_year=2030,
            bsim_card_ref=f"card-{i + 1}",
            wallet_card_token=generate_wallet_card_token(bsim_id),
            is_default=(i == 0),
            created_at=base + timedelta(minutes=i),
        )
        db_session.add(card)
        cards.append(card)
    await db_session.commit()
    return enrollment, cards


@pytest_asyncio.fixture
async def merchant(db_session):
    merchant = Merchant(
        client_id="test-merchant",
        name="Test Merchant",
        logo_url="https://merchant.example/logo.png",
        api_key=MERCHANT_API_KEY,
    )
    db_session.add(merchant)
    await db_session.commit()
    return merchant
