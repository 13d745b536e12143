from __future__ import annotations

import json
from typing import Any, Dict, Optional

from flask import current_app

from payfesa.extensions import db
from payfesa.models import AuditLog


def record_audit(action: str, *, actor_user_id: int | None = None, target_type: str | None = None,
                 target_id: int | None = None, meta: Optional[Dict[str, Any]] = None) -> bool:
    try:
        db.session.add(AuditLog(
            actor_user_id=int(actor_user_id) if actor_user_id is not None else None,
            action=action,
            target_type=target_type,
            target_id=int(target_id) if target_id is not None else None,
            meta=json.dumps(meta or {}, default=str),
        ))
        db.session.commit()
        return True
    except Exception as e:
        db.session.rollback()
        current_app.logger.warning("audit %s not recorded: %s", action, e)
        return False
