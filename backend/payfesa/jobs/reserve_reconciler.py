from __future__ import annotations

import json
from datetime import datetime

from flask import current_app
from sqlalchemy import and_, exists

from payfesa.extensions import db
from payfesa.models import AuditLog, ReserveTransaction, Settlement, SettlementIntent
from payfesa.models.settlement import STATUS_FAILED
from payfesa.utils import reserve


def _uncompensated_dispatch_failures(limit: int = 500) -> list[int]:
    """Payouts that failed at dispatch but still hold their reserve fee.

    A payout failed by a later callback keeps its fee and always passed through
    ``processing`` first, so only rows that never reached it are owed a reversal.
    """
    reversed_fee = exists().where(and_(
        ReserveTransaction.settlement_id == Settlement.id,
        ReserveTransaction.entry_type == reserve.RESERVE_OUT,
    ))
    rows = (
        db.session.query(Settlement.id)
        .join(SettlementIntent, SettlementIntent.id == Settlement.intent_id)
        .filter(
            SettlementIntent.direction == "payout",
            Settlement.status == STATUS_FAILED,
            Settlement.reserve_credited.is_(True),
            Settlement.processing_at.is_(None),
            Settlement.needs_reconciliation.is_(False),
            ~reversed_fee,
        )
        .order_by(Settlement.id.asc())
        .limit(limit)
        .all()
    )
    return [int(r[0]) for r in rows]


def reconcile_reserve() -> dict:
    """Detect reserve anomalies (ledger vs cached balance, negative ledger, flagged settlements).

    This does NOT auto-correct anything. Anomalies are written to AuditLog so they are visible.
    """
    now = datetime.utcnow()
    computed = reserve.ledger_sum()
    stored = reserve.cached_balance()
    flagged = [
        int(s.id)
        for s in Settlement.query.filter_by(needs_reconciliation=True).order_by(Settlement.id.asc()).limit(500).all()
    ]
    uncompensated = _uncompensated_dispatch_failures()

    issues = []
    if computed != stored:
        issues.append("ledger_mismatch")
    if computed < 0:
        issues.append("negative_ledger")
    if flagged:
        issues.append("settlements_need_reconciliation")
    if uncompensated:
        issues.append("uncompensated_dispatch_failures")

    result = {
        "ok": not issues,
        "issues": issues,
        "computed_balance": computed,
        "stored_balance": stored,
        "flagged_settlements": flagged,
        "uncompensated_settlements": uncompensated,
        "at": now.isoformat(),
    }
    if not issues:
        return result

    current_app.logger.error("reserve anomaly: %s", ", ".join(issues))
    try:
        db.session.add(AuditLog(
            actor_user_id=None,
            action="reserve_anomaly",
            target_type="reserve_wallet",
            target_id=None,
            meta=json.dumps(result),
            created_at=now,
        ))
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        current_app.logger.warning("reserve anomaly not recorded: %s", e)
    return result
