"""
Security utilities: password hashing, web session tokens, the credential
vault, and wallet card tokens.

This module centralizes the cryptographic primitives so they're easy to
audit and update. Four concerns are handled here:

1. PASSWORD HASHING (Argon2)
   - A password may be supplied when a user starts a bank enrollment; only
     its Argon2id hash ever reaches the database.
   - passlib's CryptContext handles hashing and constant-time verification.

2. WEB SESSION TOKENS (JWT)
   - After a successful enrollment callback or password login, the browser
     receives a signed JWT in an HTTP-only cookie ("sub" is the user id).
   - Mobile access/refresh tokens live in services/token_service.py; they
     use a separate secret, an issuer/audience pair and rotation.

3. CREDENTIAL VAULT (Fernet: AES-128-CBC + HMAC-SHA256)
   - Bank wallet credentials, OAuth refresh tokens and device credentials
     are stored only in encrypted form.
   - Fernet is authenticated (tampering fails closed with VaultDecryptionError)
     and non-deterministic (a random IV per call, so the same plaintext never
     encrypts to the same ciphertext twice).

4. WALLET CARD TOKENS
   - Routable identifiers of the form wsim_{bsimId}_{randomHex} that let a
     merchant-facing token be mapped back to the issuing bank.
"""

import secrets
from datetime import datetime, timedelta, timezone

from cryptography.fernet import Fernet, InvalidToken
from jose import jwt
from passlib.context import CryptContext

from wsim.config import settings


# ---------------------------------------------------------------------------
# 1. Password Hashing (Argon2)
# ---------------------------------------------------------------------------

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

MIN_PASSWORD_LENGTH = 8


def hash_password(plain_password: str) -> str:
    """Hash a plaintext password using Argon2id."""
    return pwd_context.hash(plain_password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a plaintext password against a stored Argon2 hash."""
    return pwd_context.verify(plain_password, hashed_password)


# ---------------------------------------------------------------------------
# 2. Web session tokens
# ---------------------------------------------------------------------------

SESSION_TOKEN_TYPE = "session"


def create_session_token(user_id: str, expires_delta: timedelta | None = None) -> str:
    """
    Create a signed session JWT for the web wallet.

    Args:
        user_id: The WalletUser id (string form), stored as "sub".
        expires_delta: Optional custom lifetime. Defaults to
                       SESSION_EXPIRE_MINUTES from settings.
    """
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.SESSION_EXPIRE_MINUTES)
    )
    to_encode = {"sub": user_id, "type": SESSION_TOKEN_TYPE, "exp": expire}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_session_token(token: str) -> dict:
    """
    Decode and verify a web session token.

    Raises:
        JWTError: If the token is expired, tampered with, or invalid.
    """
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])


# ---------------------------------------------------------------------------
# 3. Credential vault (Fernet)
# ---------------------------------------------------------------------------

class VaultDecryptionError(Exception):
    """Raised when a ciphertext is malformed, tampered with, or keyed differently."""


_fernet = Fernet(settings.ENCRYPTION_KEY.encode())


def encrypt(plaintext: str) -> str:
    """
    Encrypt a secret for storage.

    Returns:
        A URL-safe base64 Fernet token (str), different on every call.
    """
    return _fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")


def decrypt(ciphertext: str) -> str:
    """
    Decrypt a value produced by encrypt().

    Raises:
        VaultDecryptionError: If authentication fails or the input is not
            a Fernet token. Never returns partially decrypted data.
    """
    try:
        return _fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
    except (InvalidToken, UnicodeError, ValueError) as exc:
        raise VaultDecryptionError("Unable to decrypt stored credential") from exc


def generate_token(nbytes: int = 32) -> str:
    """Generate a random hex token (device credentials, redemption tokens)."""
    return secrets.token_hex(nbytes)


# ---------------------------------------------------------------------------
# 4. Wallet card tokens
# ---------------------------------------------------------------------------

WALLET_CARD_TOKEN_PREFIX = "wsim"


def generate_wallet_card_token(bsim_id: str) -> str:
    """Generate a routable card token: wsim_{bsimId}_{12 hex chars}."""
    return f"{WALLET_CARD_TOKEN_PREFIX}_{bsim_id}_{secrets.token_hex(6)}"


def parse_wallet_card_token(token: str) -> tuple[str, str] | None:
    """
    Split a wallet card token into (bsim_id, unique_id).

    Returns None for anything that is not exactly three underscore-separated
    segments starting with "wsim".
    """
    parts = token.split("_")
    if len(parts) != 3 or parts[0] != WALLET_CARD_TOKEN_PREFIX:
        return None
    return parts[1], parts[2]
