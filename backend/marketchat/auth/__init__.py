"""Caller identity for REST and socket requests.

Credentials are issued by the marketplace's auth service; this module only
verifies them and resolves the user ID they carry.

Services:
    - TokenVerifier: HS256 bearer token verification (PyJWT).
    - get_current_user_id: FastAPI dependency for REST endpoints.
"""
from .dependencies import get_current_user_id, get_token_verifier
from .service import TokenVerifier

__all__ = ["TokenVerifier", "get_current_user_id", "get_token_verifier"]
