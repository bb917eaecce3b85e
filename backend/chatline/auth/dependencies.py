"""FastAPI dependencies for authenticated HTTP requests."""
import logging
from typing import Optional

from fastapi import HTTPException, Request
from starlette.datastructures import Headers

from chatline.errors import AuthError

from .schemas import Principal
from .service import TokenVerifier

logger = logging.getLogger(__name__)


def get_verifier(request: Request) -> TokenVerifier:
    return request.app.state.verifier


def token_from_headers(headers: Headers, header_name: str = "x-auth") -> Optional[str]:
    """Pull a bearer token from the custom header or ``Authorization``."""
    token = headers.get(header_name)
    if token:
        return token
    authorization = headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None


def require_principal(request: Request) -> Principal:
    """Resolve the caller of a privileged HTTP request.

    Raises:
        HTTPException 401: If the token is missing or rejected.
    """
    header_name = request.app.state.config.auth.header_name
    token = token_from_headers(request.headers, header_name)
    try:
        return get_verifier(request).verify(token)
    except AuthError as e:
        logger.info(f"[auth] Rejected {request.method} {request.url.path}: {e}")
        raise HTTPException(status_code=401, detail=str(e))
