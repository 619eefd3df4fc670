"""Bearer token verification.

Tokens are HS256 JWTs whose ``sub`` claim is the marketplace user ID. The
signing secret is shared with the auth service through
``marketchat.secrets.yaml``.
"""
import logging
import time
from typing import Optional

import jwt

from marketchat.errors import Unauthorized

logger = logging.getLogger(__name__)


class TokenVerifier:
    """Resolves a bearer credential to a user ID."""

    def __init__(self, secret_key: str, algorithm: str = "HS256"):
        self.secret_key = secret_key
        self.algorithm = algorithm

    def verify(self, token: Optional[str]) -> str:
        """Return the user ID carried by ``token``.

        Raises:
            Unauthorized: Missing, expired, malformed, or without a subject.
        """
        if not token:
            raise Unauthorized()
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise Unauthorized("Token has expired")
        except jwt.InvalidTokenError as e:
            logger.debug("Rejected token: %s", e)
            raise Unauthorized("Invalid token")

        user_id = payload.get("sub")
        if not user_id or not isinstance(user_id, str):
            raise Unauthorized("Token has no subject")
        return user_id

    def issue(self, user_id: str, expires_in_seconds: int = 3600) -> str:
        """Sign a token for ``user_id``. Used by tests and local tooling."""
        now = int(time.time())
        payload = {"sub": user_id, "iat": now, "exp": now + expires_in_seconds}
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)
