import hmac

from fastapi import Depends, Header

from jobledger.config.settings import Settings, get_settings
from jobledger.v1.core.exceptions import UnauthorizedError


def bearer_token(authorization: str | None) -> str | None:
    """Extract the credential from an `Authorization: Bearer <token>` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def verify_worker_token(
    authorization: str | None = Header(None, alias="Authorization"),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Dependency guarding the worker endpoints.

    The comparison is constant-time; an unset server token rejects everything.
    """
    token = bearer_token(authorization)
    if token is None:
        raise UnauthorizedError("Missing bearer token")
    if not settings.worker_token or not hmac.compare_digest(
        token.encode("utf-8"), settings.worker_token.encode("utf-8")
    ):
        raise UnauthorizedError("Invalid worker token")


# Convenience type alias for dependency injection
WorkerAuthDep = Depends(verify_worker_token)
