"""
Bank (BSIM) provider registry.

The list of banks a user can link is static for the life of the process.
It comes from the BSIM_PROVIDERS setting, a JSON array in the same shape
the bank onboarding docs hand out:

    [{"bsimId": "td-sim", "name": "TD Sim", "issuer": "https://auth-td.banksim.ca",
      "clientId": "wsim-wallet", "clientSecret": "...",
      "apiUrl": "https://td.banksim.ca", "logoUrl": "https://..."}]

A malformed value never stops the API from starting: it is logged and the
registry is simply empty, so enrollment reports "bank not found" instead.

API base URL:
  The bank's REST API (card list, card tokens) lives on a different host
  from its OIDC issuer. Set "apiUrl" per provider; when it is absent,
  derive_api_base_url() guesses from local naming conventions, which is a
  development convenience and not something integrators should rely on.
"""

import logging
from urllib.parse import urlsplit, urlunsplit

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from wsim.config import settings

logger = logging.getLogger(__name__)

# Port the bank simulator's API listens on in a local checkout
LOCAL_BANK_API_PORT = 3001


class ProviderConfig(BaseModel):
    """One bank's OIDC client registration."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    bsim_id: str = Field(alias="bsimId", min_length=1)
    name: str
    issuer: str
    client_id: str = Field(alias="clientId")
    client_secret: str = Field(alias="clientSecret")
    api_url: str | None = Field(default=None, alias="apiUrl")
    logo_url: str | None = Field(default=None, alias="logoUrl")

    @property
    def api_base_url(self) -> str:
        return derive_api_base_url(self.issuer, self.api_url)


_provider_list = TypeAdapter(list[ProviderConfig])


def derive_api_base_url(issuer: str, api_url: str | None = None) -> str:
    """
    Return the bank API origin for an issuer.

    An explicit api_url always wins. Otherwise:
      - localhost / 127.0.0.1 -> same host on port 3001
      - auth-x.domain -> x.domain
      - auth.domain -> domain
      - anything else -> the issuer's own origin
    """
    if api_url:
        return api_url.rstrip("/")

    parts = urlsplit(issuer)
    hostname = parts.hostname or ""

    if hostname in ("localhost", "127.0.0.1"):
        netloc = f"{hostname}:{LOCAL_BANK_API_PORT}"
    else:
        if hostname.startswith("auth-"):
            hostname = hostname[len("auth-"):]
        elif hostname.startswith("auth."):
            hostname = hostname[len("auth."):]
        netloc = f"{hostname}:{parts.port}" if parts.port else hostname

    return urlunsplit((parts.scheme, netloc, "", "", ""))


def parse_providers(raw: str) -> list[ProviderConfig]:
    """Parse a BSIM_PROVIDERS value, returning [] (and logging) when invalid."""
    try:
        return _provider_list.validate_json(raw)
    except ValidationError as exc:
        logger.warning("Ignoring invalid BSIM_PROVIDERS configuration: %s", exc)
        return []


class ProviderRegistry:
    """
    Read-only lookup over the configured banks.

    Usage:
        registry = ProviderRegistry.from_settings()
        provider = registry.get("td-sim")
    """

    def __init__(self, providers: list[ProviderConfig]):
        self._providers = {provider.bsim_id: provider for provider in providers}

    @classmethod
    def from_settings(cls) -> "ProviderRegistry":
        return cls(parse_providers(settings.BSIM_PROVIDERS))

    def list_providers(self) -> list[ProviderConfig]:
        return list(self._providers.values())

    def get(self, bsim_id: str) -> ProviderConfig | None:
        return self._providers.get(bsim_id)
