from __future__ import annotations

import json
from typing import Any, Dict, Optional

from flask import current_app

from payfesa.extensions import db
from payfesa.models import NotificationQueue


def queue_push(user_id: int, event: str, title: str, message: str, *, reference: str = "",
               meta: Optional[Dict[str, Any]] = None) -> NotificationQueue:
    n = NotificationQueue(
        channel="push",
        to=str(int(user_id)),
        event=(event or "")[:64],
        title=title[:160] if title else "",
        message=message or "",
        reference=reference[:128] if reference else None,
        meta=json.dumps(meta or {}, default=str),
        status="queued",
    )
    db.session.add(n)
    return n


def emit(user_id: int, event: str, title: str, message: str, *, reference: str = "",
         meta: Optional[Dict[str, Any]] = None) -> bool:
    """Best-effort: enqueue and commit on its own; never raises into the caller."""
    try:
        queue_push(user_id, event, title, message, reference=reference, meta=meta)
        db.session.commit()
        return True
    except Exception as e:
        db.session.rollback()
        current_app.logger.warning("notification %s for user %s not queued: %s", event, user_id, e)
        return False
