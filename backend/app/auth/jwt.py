"""JWT access token creation and verification.

Tokens are issued by the account service with the same shared secret; this
service only needs to verify them. ``create_access_token`` exists for local
tooling and tests.
"""

from datetime import datetime, timedelta, timezone

from jose import jwt


def create_access_token(
    user_id: str,
    secret_key: str,
    algorithm: str = "HS256",
    expires_delta: timedelta | None = None,
) -> str:
    """Create a short-lived access token.

    Args:
        user_id: Subject claim (the user identifier).
        secret_key: Shared HMAC secret.
        algorithm: JWS algorithm.
        expires_delta: Lifetime. Defaults to 30 minutes.

    Returns:
        Encoded JWT string.
    """
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=30))
    to_encode = {"sub": user_id, "exp": expire, "iat": now, "type": "access"}
    return jwt.encode(to_encode, secret_key, algorithm=algorithm)


def decode_token(token: str, secret_key: str, algorithm: str = "HS256") -> dict:
    """Decode and verify a JWT token.

    Raises:
        jose.JWTError: If the token is invalid, expired, or malformed.
    """
    return jwt.decode(token, secret_key, algorithms=[algorithm])
