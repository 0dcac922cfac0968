"""Bearer-token check for the ``/api/v1`` router."""

from __future__ import annotations

import secrets

from fastapi import HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer


class ApiKeyBearer(HTTPBearer):
    """``HTTPBearer`` that also checks the token against ``IMAGECLASSIFY_API_KEY``.

    With no key configured every request passes and the header is ignored.
    """

    def __init__(self) -> None:
        super().__init__(auto_error=False, description="Value of IMAGECLASSIFY_API_KEY")

    async def __call__(self, request: Request) -> HTTPAuthorizationCredentials | None:
        expected: str | None = request.app.state.settings.api_key
        if expected is None:
            return None

        credentials = await super().__call__(request)
        if credentials is None:
            raise _unauthorized("Missing bearer token")
        if not secrets.compare_digest(credentials.credentials.encode(), expected.encode()):
            raise _unauthorized("Invalid API key")
        return credentials


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


require_api_key = ApiKeyBearer()
