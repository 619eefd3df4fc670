"""FastAPI dependencies resolving the caller identity."""
from typing import Optional

from fastapi import Depends, Header

from marketchat.config import get_config
from marketchat.errors import Unauthorized

from .service import TokenVerifier


def get_token_verifier() -> TokenVerifier:
    jwt_secrets = get_config().secrets.jwt
    return TokenVerifier(jwt_secrets.secret_key, jwt_secrets.algorithm)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` value."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_user_id(
    authorization: Optional[str] = Header(default=None),
    verifier: TokenVerifier = Depends(get_token_verifier),
) -> str:
    """Resolve the authenticated user ID, raising Unauthorized otherwise."""
    token = bearer_token(authorization)
    if token is None:
        raise Unauthorized()
    return verifier.verify(token)
