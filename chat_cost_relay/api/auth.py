"""
Caller identity for the HTTP API.

Bearer tokens are Supabase access tokens; verification is delegated to
Supabase auth.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx
from fastapi import Header, Request
from supabase import AuthError, Client

from chat_cost_relay.errors import Misconfigured, Unauthenticated

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


@dataclass(frozen=True)
class Identity:
    """Authenticated caller."""
    id: str
    email: Optional[str] = None

    def to_dict(self):
        return {"id": self.id, "email": self.email}


class Authenticator(Protocol):
    def authenticate(self, token: str) -> Identity: ...


class SupabaseAuthenticator:
    """Resolves access tokens to identities through Supabase auth."""

    def __init__(self, client: Optional[Client]):
        self.client = client

    def authenticate(self, token: str) -> Identity:
        """Verify ``token`` and return the caller.

        Raises:
            Misconfigured: If no Supabase client is configured
            Unauthenticated: If Supabase rejects the token
        """
        if self.client is None:
            raise Misconfigured("Supabase is not configured (SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY).")
        try:
            response = self.client.auth.get_user(token)
        except (AuthError, httpx.HTTPError) as e:
            logger.info("Rejected access token: %s", e)
            raise Unauthenticated("Invalid token") from e

        user = getattr(response, "user", None) if response is not None else None
        if user is None or not getattr(user, "id", None):
            raise Unauthenticated("Invalid token")
        return Identity(id=str(user.id), email=getattr(user, "email", None))


def parse_bearer(authorization: Optional[str]) -> str:
    """Extract the token from an ``Authorization`` header.

    Raises:
        Unauthenticated: If the header is absent, not a bearer header or empty
    """
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        raise Unauthenticated("No token provided")
    token = authorization[len(BEARER_PREFIX):].strip()
    if not token:
        raise Unauthenticated("No token provided")
    return token


async def require_identity(request: Request, authorization: Optional[str] = Header(None)) -> Identity:
    """FastAPI dependency resolving the caller before the handler runs."""
    token = parse_bearer(authorization)
    authenticator: Authenticator = request.app.state.authenticator
    return await asyncio.to_thread(authenticator.authenticate, token)
