from __future__ import annotations

import secrets
import time
from dataclasses import replace
from datetime import datetime

from flask import current_app
from sqlalchemy import func, update

from payfesa.errors import NotAuthorized, NotFound, SettlementError
from payfesa.extensions import db
from payfesa.models import Contribution, Payout, RoscaGroup, Settlement, User
from payfesa.models.settlement import STATUS_COMPLETED, STATUS_FAILED
from payfesa.services import settlement_engine
from payfesa.services.accounts import account_details, resolve_account
from payfesa.services.retries import retry_settlement
from payfesa.services.settlement_engine import IntentRequest
from payfesa.utils import reserve
from payfesa.utils.audit import record_audit
from payfesa.utils.notify import emit


def _require_admin(user_id: int) -> User:
    u = db.session.get(User, int(user_id)) if user_id else None
    if not u or not u.is_admin:
        raise NotAuthorized("Admin access required")
    return u


def generate_charge_id() -> str:
    return f"PC{int(time.time() * 1000)}{secrets.randbelow(10**6):06d}"


def submit_contribution(*, group_id: int, user_id: int, amount: int, rail: str, rail_details: dict,
                        idempotency_key: str | None = None) -> Settlement:
    """Charge a member's contribution into the group pool."""
    group = db.session.get(RoscaGroup, int(group_id)) if group_id else None
    if not group:
        raise NotFound("Group not found")

    key = (idempotency_key or "").strip() or generate_charge_id()
    req = IntentRequest(
        direction="collection",
        user_id=int(user_id),
        group_id=int(group_id),
        gross_amount=amount,
        rail=rail,
        rail_details=rail_details or {},
        idempotency_key=key,
        source_type="contribution",
    )
    settlement_engine.validate_intent(req)
    existing = settlement_engine.existing_for(req)
    if existing:
        return existing

    contribution = Contribution(
        user_id=int(user_id),
        group_id=int(group_id),
        amount=int(amount),
        rail=rail,
        status="pending",
    )
    try:
        db.session.add(contribution)
        db.session.flush()
        return settlement_engine.submit(
            replace(req, source_id=contribution.id),
            actor_user_id=int(user_id),
        )
    except SettlementError:
        db.session.rollback()
        raise


def _dispatch_payout(payout: Payout, *, actor: User, account_id: int | None = None) -> Settlement:
    if payout.settlement_id:
        latest = db.session.get(Settlement, int(payout.settlement_id))
        if latest and latest.status == STATUS_FAILED:
            return retry_settlement(latest.id, actor_user_id=actor.id, account_id=account_id)
        if latest:
            return latest

    acct = resolve_account(payout.recipient_id, account_id)
    return settlement_engine.submit(
        IntentRequest(
            direction="payout",
            user_id=int(payout.recipient_id),
            group_id=int(payout.group_id),
            gross_amount=int(payout.gross_amount),
            rail=acct.rail,
            rail_details=account_details(acct),
            idempotency_key=f"payout:{int(payout.id)}",
            source_type="payout",
            source_id=int(payout.id),
        ),
        actor_user_id=actor.id,
    )


def _get_payout(payout_id: int) -> Payout:
    payout = db.session.get(Payout, int(payout_id))
    if not payout:
        raise NotFound("Payout not found")
    return payout


def request_instant_payout(payout_id: int, *, user_id: int, account_id: int | None = None) -> Settlement:
    payout = _get_payout(payout_id)
    if int(payout.recipient_id) != int(user_id):
        raise NotAuthorized("Only the payout recipient can request it")
    actor = db.session.get(User, int(user_id))
    s = _dispatch_payout(payout, actor=actor, account_id=account_id)
    current_app.logger.info("instant payout %s requested by user %s -> settlement %s", payout.id, user_id, s.id)
    return s


def trigger_manual_payout(payout_id: int, *, admin_id: int) -> Settlement:
    admin = _require_admin(admin_id)
    payout = _get_payout(payout_id)
    s = _dispatch_payout(payout, actor=admin)
    record_audit(
        "manual_payout_triggered",
        actor_user_id=admin.id,
        target_type="payout",
        target_id=payout.id,
        meta={"settlement_id": s.id, "status": s.status},
    )
    return s


def payout_shortfall(payout: Payout) -> int:
    collected = db.session.query(func.coalesce(func.sum(Contribution.amount), 0)).filter(
        Contribution.group_id == payout.group_id,
        Contribution.status == STATUS_COMPLETED,
    ).scalar() or 0
    return max(0, int(payout.gross_amount or 0) - int(collected))


def cover_payout_shortfall(payout_id: int, *, admin_id: int) -> Payout:
    """Top up a payout from the reserve when members defaulted. At most once per payout."""
    admin = _require_admin(admin_id)
    payout = _get_payout(payout_id)
    if int(payout.reserve_covered_amount or 0) > 0:
        return payout

    shortfall = payout_shortfall(payout)
    if shortfall <= 0:
        return payout

    try:
        # Claim the payout first so a concurrent cover matches no row.
        claimed = db.session.execute(
            update(Payout)
            .where(Payout.id == payout.id, Payout.reserve_covered_amount == 0)
            .values(reserve_covered_amount=shortfall, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            db.session.rollback()
            return _get_payout(payout_id)
        reserve.debit(
            shortfall,
            group_id=int(payout.group_id),
            user_id=int(payout.recipient_id),
            reason=f"Covered {shortfall} shortfall for payout in group {payout.group_id}",
            commit=False,
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    db.session.refresh(payout)
    current_app.logger.info("reserve covered %s of payout %s", shortfall, payout.id)
    record_audit(
        "reserve_shortfall_covered",
        actor_user_id=admin.id,
        target_type="payout",
        target_id=payout.id,
        meta={"amount": shortfall, "group_id": payout.group_id},
    )
    emit(
        int(payout.recipient_id),
        "payout_shortfall_covered",
        "Payout Topped Up",
        "Your payout has been topped up from the group safety reserve.",
        meta={"payout_id": payout.id, "amount": shortfall},
    )
    return payout
