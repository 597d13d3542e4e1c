"""Access token verification for sync connections and API calls.

Tokens are issued by the clinic's auth service. This module only verifies
them and extracts the connection identity (userId, username, role).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import jwt

from clinicsync.errors import AuthenticationError

if TYPE_CHECKING:
    from clinicsync.core.config import AuthSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Identity:
    """Authenticated principal behind a connection."""

    user_id: str
    username: str
    role: str


class TokenVerifier(Protocol):
    """Anything that can turn a bearer token into an Identity."""

    def verify(self, token: str | None) -> Identity: ...


class JWTTokenVerifier:
    """Verify HMAC/RSA signed JWTs with PyJWT.

    Expected claims: ``userId`` (or ``sub``), ``username`` and ``role``.
    """

    def __init__(self, settings: AuthSettings) -> None:
        self._secret = settings.jwt_secret.get_secret_value()
        self._algorithms = list(settings.algorithms)
        self._issuer = settings.issuer
        self._audience = settings.audience
        self._leeway = settings.leeway_seconds

    def verify(self, token: str | None) -> Identity:
        """Verify a token and return the identity it carries.

        Raises:
            AuthenticationError: If the token is missing, invalid or expired.
        """
        if not token:
            raise AuthenticationError("Authentication token required")
        if token.lower().startswith("bearer "):
            token = token[7:]

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=self._algorithms,
                audience=self._audience,
                issuer=self._issuer,
                leeway=self._leeway,
                options={"verify_aud": self._audience is not None},
            )
        except jwt.ExpiredSignatureError as e:
            logger.info("Rejected expired token")
            raise AuthenticationError("Authentication token expired") from e
        except jwt.InvalidTokenError as e:
            logger.info("Rejected invalid token: %s", e)
            raise AuthenticationError("Invalid authentication token") from e

        user_id = payload.get("userId") or payload.get("sub")
        username = payload.get("username")
        role = payload.get("role")
        if not user_id or not username or not role:
            raise AuthenticationError(
                "Token is missing identity claims",
                {"required": ["userId", "username", "role"]},
            )
        return Identity(user_id=str(user_id), username=str(username), role=str(role))
