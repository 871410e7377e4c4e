"""Bearer tokens for Kitab readers.

One kind of token is issued: an HS256 access token carrying the user's UUID
in ``sub``, valid for ``settings.jwt_access_token_expire_minutes`` (a week by
default). There is no refresh flow; clients log in again once it expires.
"""

from datetime import datetime, timedelta, timezone

from jose import jwt

from kitab.config import settings

ACCESS_TOKEN_TYPE = "access"


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Sign ``data`` (which must hold ``sub``) as an access token."""
    now = datetime.now(timezone.utc)
    lifetime = expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes)
    claims = {**data, "iat": now, "exp": now + lifetime, "type": ACCESS_TOKEN_TYPE}
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """Verify signature and expiry; raises ``jose.JWTError`` on failure."""
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])


def create_token_for_user(user_id: str, email: str | None = None) -> dict[str, str]:
    """Payload for ``TokenResponse`` after register or login."""
    claims = {"sub": user_id}
    if email:
        claims["email"] = email
    return {"access_token": create_access_token(claims), "token_type": "bearer"}
