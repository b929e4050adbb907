from datetime import datetime, timedelta, timezone
from jose import jwt, JWTError
from src.config import settings


def _encode(payload: dict) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        **payload,
        "exp": now + timedelta(minutes=settings.jwt_expiration_minutes),
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def _decode(token: str, token_type: str) -> dict | None:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    if payload.get("type") != token_type or not payload.get("sub"):
        return None
    return payload


def create_access_token(user_id: str, company_id: str) -> str:
    """Create a signed session token scoped to one company."""
    return _encode({"sub": user_id, "company_id": company_id, "type": "session"})


def decode_access_token(token: str) -> dict | None:
    payload = _decode(token, "session")
    if payload is None or not payload.get("company_id"):
        return None
    return payload


def create_super_admin_token(super_admin_id: str) -> str:
    return _encode({"sub": super_admin_id, "type": "super_admin"})


def decode_super_admin_token(token: str) -> dict | None:
    return _decode(token, "super_admin")
