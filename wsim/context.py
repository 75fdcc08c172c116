"""
Caller identity handed from transport adapters to the service engines.

Each router authenticates with its own scheme (web session, mobile bearer
token, merchant API key) and then invokes the same engine; the engine only
ever sees who is calling, never how they proved it.
"""

import uuid
from dataclasses import dataclass


@dataclass(frozen=True)
class CallerContext:
    """
    Attributes:
        user_id: The authenticated WalletUser, or None for anonymous callers
                 (e.g., a browser starting its first enrollment).
        device_id: The mobile device the call came from, if any.
    """
    user_id: uuid.UUID | None = None
    device_id: str | None = None

    @property
    def is_mobile(self) -> bool:
        return self.device_id is not None


ANONYMOUS = CallerContext()
