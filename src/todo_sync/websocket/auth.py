"""Handshake token validation for the sync channel."""

import jwt
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from ..utils.errors import AuthenticationError
from ..utils.logging import get_logger


logger = get_logger("todo-sync.websocket.auth")


class TokenAuth:
    """Issues and validates the JWTs presented on channel handshake."""

    def __init__(self, secret_key: str, algorithm: str = "HS256", token_expiry_hours: int = 24):
        """Initialize token handling.

        Args:
            secret_key: Secret key for JWT signing
            algorithm: JWT signing algorithm
            token_expiry_hours: Lifetime of generated tokens
        """
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.token_expiry = timedelta(hours=token_expiry_hours)

    def generate_token(self, user_id: str, **claims) -> str:
        """Generate a token for ``user_id``.

        The HTTP/auth layer normally issues tokens; this exists for tooling
        and tests that share the secret.
        """
        now = datetime.now(timezone.utc)
        payload = {
            "user_id": user_id,
            "iat": now,
            "exp": now + self.token_expiry,
            **claims
        }
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def validate_token(self, token: str) -> Dict[str, Any]:
        """Decode a token and return its claims.

        Raises:
            AuthenticationError: expired, malformed, or missing ``user_id``
        """
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError as e:
            logger.warning("token_expired")
            raise AuthenticationError("Token has expired", cause=e) from e
        except jwt.InvalidTokenError as e:
            logger.warning("token_invalid", error=str(e))
            raise AuthenticationError(f"Invalid token: {e}", cause=e) from e

        if not payload.get("user_id"):
            raise AuthenticationError("Token carries no user_id")
        return payload


__all__ = [
    'TokenAuth',
]
