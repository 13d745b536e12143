from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app

from payfesa.models import Settlement
from payfesa.models.settlement import STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING, STATUS_PROCESSING
from payfesa.services import settlement_engine
from payfesa.utils.paychangu_client import get_gateway


def _now():
    return datetime.utcnow()


def run_settlement_poller(*, limit: int = 100, gateway=None) -> dict:
    """Verify in-flight settlements with the rail.

    Pending settlements whose dispatch outcome was lost are moved to
    processing first so they can be verified like any other in-flight one.
    """
    stale_seconds = int(current_app.config.get("SETTLEMENT_STALE_SECONDS", 900))
    cutoff = _now() - timedelta(seconds=stale_seconds)
    gw = gateway or get_gateway()

    stats = {"checked": 0, "promoted": 0, "completed": 0, "failed": 0, "processing": 0, "errors": 0}

    stale_pending = (
        Settlement.query.filter(Settlement.status == STATUS_PENDING, Settlement.updated_at <= cutoff)
        .order_by(Settlement.id.asc())
        .limit(int(limit))
        .all()
    )
    for s in stale_pending:
        settlement_engine.reconcile(s.id, STATUS_PROCESSING)
        stats["promoted"] += 1

    in_flight = (
        Settlement.query.filter(Settlement.status == STATUS_PROCESSING, Settlement.updated_at <= cutoff)
        .order_by(Settlement.updated_at.asc(), Settlement.id.asc())
        .limit(int(limit))
        .all()
    )
    ids = [int(s.id) for s in in_flight]
    for sid in ids:
        stats["checked"] += 1
        try:
            s = settlement_engine.verify(sid, gateway=gw)
        except Exception:
            current_app.logger.exception("poller could not verify settlement %s", sid)
            stats["errors"] += 1
            continue
        if s.status == STATUS_COMPLETED:
            stats["completed"] += 1
        elif s.status == STATUS_FAILED:
            stats["failed"] += 1
        else:
            stats["processing"] += 1

    current_app.logger.info("settlement poller: %s", stats)
    return stats
