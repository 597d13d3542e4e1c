"""FastAPI dependencies shared by the clinicsync routers."""

from __future__ import annotations

from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from clinicsync.api.container import AppServices
from clinicsync.api.middleware.errors import AuthorizationError
from clinicsync.errors import AuthenticationError
from clinicsync.services.auth import Identity

bearer_scheme = HTTPBearer(auto_error=False)


def get_services(request: Request) -> AppServices:
    """The service container wired at application startup."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        msg = "Application services are not initialized"
        raise RuntimeError(msg)
    return services


async def require_identity(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)] = None,
) -> Identity:
    """Verify the bearer token on a REST call.

    Raises:
        AuthenticationError: If the token is missing or invalid (401).
    """
    if credentials is None:
        raise AuthenticationError("Authentication token required")
    return get_services(request).verifier.verify(credentials.credentials)


def require_role(*roles: str) -> Callable:
    """Factory for dependencies that admit only the given roles.

    Usage:
        @router.post("/cleanup")
        async def cleanup(identity: Identity = Depends(require_role("ADMIN"))):
            ...
    """

    async def _check_role(
        identity: Annotated[Identity, Depends(require_identity)],
    ) -> Identity:
        if identity.role not in roles:
            raise AuthorizationError(
                f"Role required: {', '.join(roles)}",
                {"role": identity.role},
            )
        return identity

    return _check_role


ServicesDep = Annotated[AppServices, Depends(get_services)]
IdentityDep = Annotated[Identity, Depends(require_identity)]
