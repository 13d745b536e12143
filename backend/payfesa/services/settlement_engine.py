"""Settlement engine.

Drives one settlement through ``pending -> processing -> completed`` (or
``failed``). Fees are fixed when the intent is accepted, the reserve fee of a
payout is credited in the same transaction that creates the settlement, and the
gateway is called only after that transaction commits. Terminal settlements are
never modified; retries create new rows.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from payfesa.errors import InvalidIntent, NotFound, NotRetryable, SettlementError
from payfesa.extensions import db
from payfesa.models import Contribution, Payout, Settlement, SettlementIntent
from payfesa.models.settlement import (
    ALLOWED_TRANSITIONS,
    DIRECTIONS,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
)
from payfesa.utils import reserve
from payfesa.utils.audit import record_audit
from payfesa.utils.fees import FeeBreakdown, compute_fees_from_gross, no_fees
from payfesa.utils.notify import emit
from payfesa.utils.paychangu_client import GatewayRequest, format_amount, get_gateway, map_status
from payfesa.utils.rails import ResolvedRail, resolve_rail


class InvalidTransition(Exception):
    pass


@dataclass(frozen=True)
class IntentRequest:
    direction: str
    user_id: int
    gross_amount: int
    rail: str
    rail_details: Dict[str, Any]
    idempotency_key: str
    group_id: Optional[int] = None
    source_type: Optional[str] = None
    source_id: Optional[int] = None
    retry_of_id: Optional[int] = None
    attempt: int = 1


def _now() -> datetime:
    return datetime.utcnow()


def _money(amount: int) -> str:
    cfg = current_app.config
    return f"{cfg.get('SETTLEMENT_CURRENCY', 'MWK')} {format_amount(int(amount), int(cfg.get('CURRENCY_EXPONENT', 2)))}"


def validate_intent(req: IntentRequest) -> ResolvedRail:
    if req.direction not in DIRECTIONS:
        raise InvalidIntent(f"Unknown direction: {req.direction or '(none)'}")
    if not req.user_id:
        raise InvalidIntent("Settlement requires a user")
    key = (req.idempotency_key or "").strip()
    if not key or len(key) > 160:
        raise InvalidIntent("Idempotency key is required (max 160 characters)")
    fee_breakdown(req.direction, req.gross_amount)
    return resolve_rail(req.rail, req.rail_details)


def fee_breakdown(direction: str, gross_amount: int) -> FeeBreakdown:
    if direction == "refund":
        return no_fees(gross_amount)
    return compute_fees_from_gross(gross_amount)


def dispatch_amount(direction: str, breakdown: FeeBreakdown) -> int:
    # Payouts send the net; collections charge the gross; refunds return the full amount.
    if direction == "payout":
        return breakdown.net_amount
    return breakdown.gross_amount


def find_by_key(idempotency_key: str) -> Settlement | None:
    intent = SettlementIntent.query.filter_by(idempotency_key=idempotency_key).first()
    if not intent:
        return None
    return Settlement.query.filter_by(intent_id=intent.id).first()


def get_settlement(settlement_id: int) -> Settlement:
    s = db.session.get(Settlement, int(settlement_id))
    if not s:
        raise NotFound("Settlement not found")
    return s


def _same_request(s: Settlement, req: IntentRequest) -> bool:
    i = s.intent
    return (
        i.direction == req.direction
        and int(i.user_id) == int(req.user_id)
        and int(i.gross_amount) == int(req.gross_amount)
        and i.rail == req.rail
    )


def existing_for(req: IntentRequest) -> Settlement | None:
    """Settlement already accepted under the request's key, if any.

    A key already used by another member or for a different payload is refused
    rather than handing back someone else's settlement.
    """
    existing = find_by_key(req.idempotency_key.strip())
    if existing and not _same_request(existing, req):
        raise InvalidIntent("Idempotency key reuse with different payload")
    return existing


def _transition(s: Settlement, new_status: str) -> None:
    if new_status not in ALLOWED_TRANSITIONS.get(s.status, set()):
        raise InvalidTransition(f"Illegal settlement transition: {s.status} -> {new_status}")
    now = _now()
    s.status = new_status
    s.updated_at = now
    if new_status == STATUS_PROCESSING:
        s.processing_at = now
    elif new_status == STATUS_COMPLETED:
        s.completed_at = now
        s.processed_at = now
    elif new_status == STATUS_FAILED:
        s.failed_at = now
        s.processed_at = now


def _sync_source(s: Settlement) -> None:
    """Mirror settlement status onto the contribution or payout it settles."""
    intent = s.intent
    if not intent or not intent.source_id:
        return
    if intent.source_type == "contribution":
        c = db.session.get(Contribution, int(intent.source_id))
        if c:
            c.settlement_id = s.id
            c.status = s.status
            if s.status == STATUS_COMPLETED:
                c.completed_at = s.completed_at
            db.session.add(c)
    elif intent.source_type == "payout":
        p = db.session.get(Payout, int(intent.source_id))
        if p:
            p.settlement_id = s.id
            p.status = s.status
            p.updated_at = _now()
            if s.status == STATUS_COMPLETED:
                p.processed_at = s.completed_at
            db.session.add(p)


def _accept(req: IntentRequest, breakdown: FeeBreakdown) -> Settlement:
    """Insert intent + pending settlement and credit the reserve fee, atomically."""
    intent = SettlementIntent(
        direction=req.direction,
        group_id=req.group_id,
        user_id=int(req.user_id),
        gross_amount=int(req.gross_amount),
        rail=req.rail,
        rail_details=json.dumps(req.rail_details or {}, sort_keys=True),
        idempotency_key=req.idempotency_key.strip(),
        source_type=req.source_type,
        source_id=req.source_id,
    )
    db.session.add(intent)
    db.session.flush()

    s = Settlement(
        intent_id=intent.id,
        user_id=int(req.user_id),
        status=STATUS_PENDING,
        gross_amount=breakdown.gross_amount,
        reserve_fee=breakdown.reserve_fee if req.direction == "payout" else 0,
        platform_fee=breakdown.platform_fee if req.direction != "refund" else 0,
        net_amount=breakdown.net_amount,
        dispatch_amount=dispatch_amount(req.direction, breakdown),
        retry_of_id=req.retry_of_id,
        attempt=int(req.attempt or 1),
    )
    s.intent = intent
    db.session.add(s)
    db.session.flush()

    if req.direction == "payout" and s.reserve_fee > 0:
        reserve.credit(
            s.reserve_fee,
            group_id=req.group_id,
            user_id=int(req.user_id),
            settlement_id=s.id,
            reason=f"Payout safety fee for settlement {s.id}",
            commit=False,
        )
        s.reserve_credited = True

    _sync_source(s)
    db.session.commit()
    return s


def _compensate_reserve(s: Settlement) -> None:
    """Debit back the reserve fee of a payout whose dispatch failed. Joins the caller's transaction."""
    reserve.debit(
        s.reserve_fee,
        group_id=s.intent.group_id,
        user_id=int(s.user_id),
        settlement_id=s.id,
        reason=f"Reversal of payout safety fee for failed dispatch {s.id}",
        commit=False,
    )


def _fail_dispatch(s: Settlement, error: str) -> None:
    _transition(s, STATUS_FAILED)
    s.failure_reason = (error or "")[:500]
    _sync_source(s)
    db.session.add(s)


def _report_compensation_failure(s: Settlement, e: Exception) -> None:
    error = getattr(e, "message", None) or str(e)
    kind = getattr(e, "kind", type(e).__name__)
    current_app.logger.error(
        "reserve compensation failed for settlement %s (%s); manual reconciliation required", s.id, error,
    )
    record_audit(
        "reserve_compensation_failed",
        target_type="settlement",
        target_id=s.id,
        meta={"reserve_fee": s.reserve_fee, "error": error, "kind": kind},
    )


def _notify_outcome(s: Settlement) -> None:
    direction = s.direction
    amount = _money(s.dispatch_amount)
    if direction == "collection":
        titles = {
            STATUS_PROCESSING: ("Contribution Processing", f"Your contribution of {amount} is being processed."),
            STATUS_COMPLETED: ("Contribution Successful", f"Your contribution of {amount} has been processed successfully."),
            STATUS_FAILED: ("Contribution Failed", f"Your contribution of {amount} could not be processed. Please try again."),
        }
    elif direction == "refund":
        titles = {
            STATUS_PROCESSING: ("Refund Processing", f"Your refund of {amount} is being processed."),
            STATUS_COMPLETED: ("Refund Completed", f"Your refund of {amount} has been paid."),
            STATUS_FAILED: ("Refund Failed", f"Your refund of {amount} could not be paid. Our team will follow up."),
        }
    else:
        titles = {
            STATUS_PROCESSING: ("Payout Processing", f"Your payout of {amount} is being processed."),
            STATUS_COMPLETED: ("Payout Successful", f"Your payout of {amount} has been processed successfully."),
            STATUS_FAILED: ("Payout Failed", f"Your payout of {amount} has failed. Please contact support."),
        }
    title, message = titles.get(s.status, ("Settlement Update", f"Settlement of {amount} is {s.status}."))
    emit(
        int(s.user_id),
        f"{direction}_{s.status}",
        title,
        message,
        reference=s.intent.idempotency_key if s.intent else "",
        meta={"settlement_id": s.id, "status": s.status, "amount": s.dispatch_amount},
    )


def submit(req: IntentRequest, *, gateway=None, actor_user_id: int | None = None) -> Settlement:
    resolved = validate_intent(req)

    existing = existing_for(req)
    if existing:
        return existing

    gw = gateway or get_gateway()
    breakdown = fee_breakdown(req.direction, req.gross_amount)

    try:
        s = _accept(req, breakdown)
    except IntegrityError:
        db.session.rollback()
        # Lost the race for the key to a concurrent submit.
        existing = existing_for(req)
        if existing:
            return existing
        if req.retry_of_id:
            raise NotRetryable("Settlement has already been retried")
        raise
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(
        "settlement %s accepted: %s %s gross=%s dispatch=%s key=%s",
        s.id, req.direction, req.rail, s.gross_amount, s.dispatch_amount, req.idempotency_key,
    )

    try:
        result = gw.initiate(GatewayRequest(
            direction=req.direction,
            rail=resolved,
            amount=s.dispatch_amount,
            charge_id=req.idempotency_key.strip(),
        ))
    except SettlementError as e:
        result = None
        error, error_kind = e.message, e.kind
    except Exception as e:
        current_app.logger.exception("gateway dispatch crashed for settlement %s", s.id)
        result = None
        error, error_kind = str(e) or "Payment initialization failed", "GatewayRejected"

    if result is not None and result.success:
        _transition(s, STATUS_PROCESSING)
        s.external_reference = result.external_ref or None
        s.trace_id = result.trace_id or None
        if result.payment_account_details:
            s.payment_account_details = json.dumps(result.payment_account_details, default=str)
        if result.status in (STATUS_COMPLETED, STATUS_FAILED):
            _transition(s, result.status)
    elif result is not None and result.timed_out:
        # The rail may have accepted it; verification decides.
        _transition(s, STATUS_PROCESSING)
        current_app.logger.warning("settlement %s dispatch timed out; held in processing", s.id)
    else:
        if result is not None:
            error, error_kind = result.error or "Payment initialization failed", result.error_kind or "GatewayRejected"
        current_app.logger.warning("settlement %s failed at dispatch (%s): %s", s.id, error_kind, error)

    compensation_error = None
    if s.status == STATUS_PENDING:
        _fail_dispatch(s, error)
        if s.direction == "payout" and s.reserve_credited and s.reserve_fee > 0:
            # The failed transition and the fee reversal commit together.
            try:
                _compensate_reserve(s)
            except Exception as e:
                compensation_error = e
                db.session.rollback()
                s = get_settlement(s.id)
                _fail_dispatch(s, error)
                s.needs_reconciliation = True
    else:
        _sync_source(s)
        db.session.add(s)
    db.session.commit()

    if compensation_error is not None:
        _report_compensation_failure(s, compensation_error)

    record_audit(
        "settlement_dispatched" if s.status != STATUS_FAILED else "settlement_dispatch_failed",
        actor_user_id=actor_user_id,
        target_type="settlement",
        target_id=s.id,
        meta={
            "direction": req.direction,
            "rail": req.rail,
            "status": s.status,
            "gross_amount": s.gross_amount,
            "dispatch_amount": s.dispatch_amount,
            "reserve_fee": s.reserve_fee,
            "external_reference": s.external_reference,
            "failure_reason": s.failure_reason,
            "retry_of": s.retry_of_id,
        },
    )
    _notify_outcome(s)
    return s


def reconcile(settlement_id: int, external_status: str, *, external_ref: str | None = None,
              failure_reason: str | None = None) -> Settlement:
    """Apply an outcome reported by the rail. Terminal settlements are returned untouched."""
    # Re-read under the row lock; the copy in the session may predate a concurrent callback.
    s = (
        Settlement.query.filter_by(id=int(settlement_id))
        .with_for_update(of=Settlement)
        .populate_existing()
        .first()
    )
    if not s:
        raise NotFound("Settlement not found")
    if s.is_terminal:
        db.session.rollback()
        return s

    status = external_status if external_status in (STATUS_COMPLETED, STATUS_FAILED, STATUS_PROCESSING) \
        else map_status(external_status)
    before = s.status

    if s.status == STATUS_PENDING:
        _transition(s, STATUS_PROCESSING)
    if external_ref and not s.external_reference:
        s.external_reference = str(external_ref)[:128]
    if status == STATUS_COMPLETED:
        _transition(s, STATUS_COMPLETED)
    elif status == STATUS_FAILED:
        _transition(s, STATUS_FAILED)
        s.failure_reason = (failure_reason or "Payment failed")[:500]

    _sync_source(s)
    db.session.add(s)
    db.session.commit()

    if s.status != before:
        current_app.logger.info("settlement %s reconciled: %s -> %s", s.id, before, s.status)
        record_audit(
            "settlement_reconciled",
            target_type="settlement",
            target_id=s.id,
            meta={"from": before, "to": s.status, "external_status": external_status, "external_reference": s.external_reference},
        )
        if s.is_terminal:
            _notify_outcome(s)
    return s


def verify(settlement_id: int, *, gateway=None) -> Settlement:
    """Poll the rail for a non-terminal settlement and reconcile what it reports."""
    s = get_settlement(settlement_id)
    if s.is_terminal:
        return s
    gw = gateway or get_gateway()
    result = gw.verify(s.intent.idempotency_key)
    if not result.success:
        current_app.logger.warning("verification of settlement %s inconclusive: %s", s.id, result.error)
        return s
    return reconcile(s.id, result.status, external_ref=result.external_ref or None,
                     failure_reason=result.error or None)
