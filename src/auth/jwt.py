from jose import jwt, JWTError
from src.config import settings


def _decode(token: str, token_type: str) -> dict | None:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    if payload.get("type") != token_type:
        return None
    return payload


def decode_access_token(token: str) -> dict | None:
    """Decode and validate a session JWT. Returns payload or None if invalid."""
    return _decode(token, "session")


def decode_super_admin_token(token: str) -> dict | None:
    """Decode and validate a super-admin JWT. Returns payload or None if invalid."""
    return _decode(token, "super_admin")
