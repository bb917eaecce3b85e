"""Bearer token verification.

Tokens are HS256 JWTs carrying the claims::

    {"id": "<user id>", "email": "...", "name": "...", "exp": ...}

``sub`` is accepted in place of ``id``. When ``name`` is missing the email is
used as the display name.
"""
import logging
import time
from typing import Optional

import jwt

from chatline.errors import AuthError

from .schemas import Principal

logger = logging.getLogger(__name__)


class TokenVerifier:
    """Validates opaque bearer tokens and yields a Principal."""

    def __init__(self, secret_key: str, algorithm: str = "HS256", expire_minutes: Optional[int] = None):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.expire_minutes = expire_minutes

    def verify(self, token: Optional[str]) -> Principal:
        """Verify a token and return the principal it identifies.

        Raises:
            AuthError: If the token is missing, malformed, expired, or has
                no user id claim.
        """
        if not token:
            raise AuthError("Token missing")

        try:
            claims = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthError("Token expired")
        except jwt.InvalidTokenError as e:
            logger.debug(f"Token rejected: {e}")
            raise AuthError("Invalid token")

        user_id = claims.get("id") or claims.get("sub")
        if not user_id:
            raise AuthError("Invalid token")

        email = claims.get("email") or ""
        return Principal(
            id=str(user_id),
            displayName=claims.get("name") or email or str(user_id),
            email=email,
        )

    def issue(self, principal: Principal, expires_in: Optional[int] = None) -> str:
        """Sign a token for *principal*.

        Credential issuance belongs to the identity service; this exists for
        local development and tests. Without *expires_in* (seconds) the
        token lives for ``expire_minutes``, or never expires when that is unset.
        """
        claims = {
            "id": principal.id,
            "email": principal.email,
            "name": principal.displayName,
        }
        if expires_in is None and self.expire_minutes is not None:
            expires_in = self.expire_minutes * 60
        if expires_in is not None:
            claims["exp"] = int(time.time()) + expires_in
        return jwt.encode(claims, self.secret_key, algorithm=self.algorithm)
