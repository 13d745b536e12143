import os
import time
from typing import Optional, Dict, Any

import jwt
from flask import current_app, has_app_context

ACCESS = "access"


def _secret() -> str:
    if has_app_context():
        return current_app.config.get("SECRET_KEY") or os.getenv("SECRET_KEY") or "dev-secret"
    return os.getenv("SECRET_KEY") or "dev-secret"


def create_access_token(user_id: int, ttl_seconds: int = 60 * 60 * 24 * 7) -> str:
    now = int(time.time())
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + ttl_seconds,
        "type": ACCESS,
    }
    return jwt.encode(payload, _secret(), algorithm="HS256")


def decode_token(token: str, expected_type: str | None = ACCESS) -> Optional[Dict[str, Any]]:
    """Verified claims, or None for a bad/expired token or one of the wrong type."""
    try:
        claims = jwt.decode(token, _secret(), algorithms=["HS256"])
    except jwt.PyJWTError:
        return None
    if expected_type and claims.get("type") != expected_type:
        return None
    return claims


def get_bearer_token(auth_header: str) -> Optional[str]:
    if not auth_header:
        return None
    parts = auth_header.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def user_id_from_header(auth_header: str) -> Optional[int]:
    token = get_bearer_token(auth_header)
    claims = decode_token(token) if token else None
    if not claims:
        return None
    try:
        return int(claims.get("sub"))
    except (TypeError, ValueError):
        return None
