"""
Application configuration using Pydantic Settings.

All configuration is loaded from environment variables, with an optional .env
file as a fallback. The .env file is gitignored; secrets never live in source.

Pydantic Settings automatically:
  1. Reads from environment variables (highest priority)
  2. Falls back to .env file values
  3. Uses defaults defined here (lowest priority)

Usage:
    from wsim.config import settings
    print(settings.APP_URL)
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Central configuration for the wallet API.

    Required fields (no defaults) MUST be set in .env or environment:
      - SECRET_KEY: Signs web session tokens
      - MOBILE_JWT_SECRET: Signs mobile access/refresh tokens
      - ENCRYPTION_KEY: Fernet key for bank tokens and device credentials at rest
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # --- Application ---
    APP_NAME: str = "WSIM Wallet API"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # --- Database ---
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/wsim.db"

    # --- Public URLs ---
    # APP_URL is this API (OIDC redirect URIs are built from it);
    # FRONTEND_URL is the web wallet that enrollment redirects land on.
    APP_URL: str = "http://localhost:3003"
    FRONTEND_URL: str = "http://localhost:3004"

    # --- Web sessions ---
    # REQUIRED: No default, forces the developer to set a real secret
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    SESSION_EXPIRE_MINUTES: int = 60 * 24

    # --- Mobile tokens (seconds) ---
    MOBILE_JWT_SECRET: str
    MOBILE_TOKEN_AUDIENCE: str = "mwsim"
    MOBILE_ACCESS_TOKEN_EXPIRY: int = 3600
    MOBILE_REFRESH_TOKEN_EXPIRY: int = 30 * 24 * 3600
    MOBILE_DEVICE_CREDENTIAL_EXPIRY: int = 90 * 24 * 3600
    MOBILE_DEEP_LINK_SCHEME: str = "mwsim"

    # --- Credential vault ---
    # Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    ENCRYPTION_KEY: str

    # --- Bank (BSIM) providers ---
    # JSON array: [{"bsimId", "name", "issuer", "clientId", "clientSecret", "apiUrl"?, "logoUrl"?}]
    BSIM_PROVIDERS: str = "[]"
    BSIM_HTTP_TIMEOUT_SECONDS: float = 10.0

    # --- Correlation stores (seconds) ---
    ENROLLMENT_STATE_TTL_SECONDS: int = 600
    LOGIN_CHALLENGE_TTL_SECONDS: int = 300
    CORRELATION_SWEEP_INTERVAL_SECONDS: int = 60

    # --- Mobile payments (seconds) ---
    PAYMENT_REQUEST_TTL_SECONDS: int = 300
    PAYMENT_APPROVAL_GRACE_SECONDS: int = 60
    # Shared secret for the end-to-end test-approve shortcut (never in production)
    E2E_TEST_KEY: str = "wsim-e2e-test"

    # --- Agent step-up ---
    STEP_UP_EXPIRY_MINUTES: int = 15
    DAILY_LIMIT_RESET_TIMEZONE: str = "America/Toronto"

    # --- CORS ---
    ALLOWED_ORIGINS: list[str] = ["http://localhost:3004"]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"


# Singleton: import this instance everywhere instead of creating new Settings()
settings = Settings()
