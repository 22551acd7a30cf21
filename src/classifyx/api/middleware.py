"""Middleware: optional API key authentication.

Clients authenticate with either ``Authorization: Bearer <key>`` or
``X-API-Key: <key>``. Browsers embedding the classifier usually find the
custom header easier to set than a bearer token.
"""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from classifyx.config import Settings

_bearer_scheme = HTTPBearer(auto_error=False)
_header_scheme = APIKeyHeader(name="X-API-Key", auto_error=False)


def _presented_key(
    credentials: HTTPAuthorizationCredentials | None,
    header_key: str | None,
) -> str | None:
    if credentials is not None:
        return credentials.credentials
    return header_key


async def require_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
    header_key: Annotated[str | None, Depends(_header_scheme)],
) -> None:
    """Reject the request unless it carries the configured API key.

    Passes everything through when CLASSIFYX_API_KEY is unset.
    """
    settings: Settings = request.app.state.settings
    if settings.api_key is None:
        return

    presented = _presented_key(credentials, header_key)
    if presented is None or not secrets.compare_digest(presented.encode(), settings.api_key.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
