from __future__ import annotations

from datetime import datetime, timedelta

from payfesa.errors import RateLimited
from payfesa.extensions import db
from payfesa.models import RateLimitHit


def check_rate_limit(identifier: str, endpoint: str, max_requests: int = 100, window_minutes: int = 60) -> dict:
    """Sliding-window limiter. Counts and records a hit when allowed."""
    now = datetime.utcnow()
    since = now - timedelta(minutes=int(window_minutes))
    ident = str(identifier)[:128]

    used = RateLimitHit.query.filter(
        RateLimitHit.identifier == ident,
        RateLimitHit.endpoint == endpoint,
        RateLimitHit.created_at >= since,
    ).count()
    if used >= int(max_requests):
        return {
            "allowed": False,
            "remaining": 0,
            "message": f"Rate limit exceeded: {int(max_requests)} requests per {int(window_minutes)} minutes",
        }

    db.session.add(RateLimitHit(identifier=ident, endpoint=endpoint, created_at=now))
    db.session.commit()
    return {"allowed": True, "remaining": int(max_requests) - used - 1, "message": ""}


def enforce_rate_limit(identifier: str, endpoint: str, max_requests: int, window_minutes: int) -> dict:
    result = check_rate_limit(identifier, endpoint, max_requests, window_minutes)
    if not result["allowed"]:
        raise RateLimited(result["message"])
    return result
