from __future__ import annotations

import hashlib

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required
from sqlalchemy.exc import IntegrityError

from payfesa.errors import InvalidAmount, NotAuthorized
from payfesa.extensions import db
from payfesa.models import Settlement, WebhookEvent
from payfesa.services import settlement_engine
from payfesa.services.payouts import (
    cover_payout_shortfall,
    request_instant_payout,
    submit_contribution,
    trigger_manual_payout,
)
from payfesa.services.retries import retry_settlement
from payfesa.utils.audit import record_audit
from payfesa.utils.paychangu_client import map_status, verify_signature

settlements_bp = Blueprint("settlements_bp", __name__, url_prefix="/api")
webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/webhooks")


def _amount(raw) -> int:
    if isinstance(raw, bool):
        raise InvalidAmount()
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw.strip().isdigit():
        return int(raw.strip())
    raise InvalidAmount("Amount must be a whole number of minor units")


def _optional_id(raw) -> int | None:
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _rail_details(data: dict) -> dict:
    details = data.get("rail_details")
    if isinstance(details, dict):
        return details
    keys = ("phone_number", "provider", "bank_name", "account_number", "account_name")
    return {k: data.get(k) for k in keys if data.get(k)}


def _settlement_response(s: Settlement, status_code: int = 200, **extra):
    fees = settlement_engine.fee_breakdown(s.direction, int(s.gross_amount))
    payload = {
        "success": True,
        "settlement": s.to_dict(),
        "fees": fees.to_dict(),
        "reconciliation_required": bool(s.needs_reconciliation),
    }
    payload.update(extra)
    return jsonify(payload), status_code


def _can_view(s: Settlement) -> bool:
    return int(s.user_id) == int(current_user.id) or current_user.is_admin


@settlements_bp.post("/contributions")
@login_required
def create_contribution():
    data = request.get_json(silent=True) or {}
    s = submit_contribution(
        group_id=_optional_id(data.get("group_id")),
        user_id=int(current_user.id),
        amount=_amount(data.get("amount")),
        rail=(data.get("rail") or data.get("payment_method") or "").strip(),
        rail_details=_rail_details(data),
        idempotency_key=request.headers.get("Idempotency-Key") or data.get("charge_id"),
    )
    return _settlement_response(s, 201 if s.status != "failed" else 200, charge_id=s.intent.idempotency_key)


@settlements_bp.post("/payouts/<int:payout_id>/instant")
@login_required
def instant_payout(payout_id: int):
    data = request.get_json(silent=True) or {}
    s = request_instant_payout(payout_id, user_id=int(current_user.id), account_id=_optional_id(data.get("account_id")))
    return _settlement_response(s)


@settlements_bp.post("/admin/payouts/<int:payout_id>/manual")
@login_required
def manual_payout(payout_id: int):
    s = trigger_manual_payout(payout_id, admin_id=int(current_user.id))
    return _settlement_response(s)


@settlements_bp.post("/admin/payouts/<int:payout_id>/cover-shortfall")
@login_required
def cover_shortfall(payout_id: int):
    payout = cover_payout_shortfall(payout_id, admin_id=int(current_user.id))
    return jsonify({"success": True, "payout": payout.to_dict()}), 200


@settlements_bp.get("/settlements")
@login_required
def my_settlements():
    q = Settlement.query.filter_by(user_id=int(current_user.id))
    status = (request.args.get("status") or "").strip().lower()
    if status:
        q = q.filter(Settlement.status == status)
    rows = q.order_by(Settlement.created_at.desc(), Settlement.id.desc()).limit(200).all()
    return jsonify({"success": True, "items": [s.to_dict() for s in rows]}), 200


@settlements_bp.get("/settlements/<int:settlement_id>")
@login_required
def get_settlement(settlement_id: int):
    s = settlement_engine.get_settlement(settlement_id)
    if not _can_view(s):
        raise NotAuthorized()
    return _settlement_response(s)


@settlements_bp.post("/settlements/<int:settlement_id>/retry")
@login_required
def retry(settlement_id: int):
    data = request.get_json(silent=True) or {}
    details = data.get("rail_details") if isinstance(data.get("rail_details"), dict) else None
    s = retry_settlement(
        settlement_id,
        actor_user_id=int(current_user.id),
        account_id=_optional_id(data.get("account_id")),
        rail=(data.get("rail") or "").strip() or None,
        rail_details=details,
    )
    return _settlement_response(s, 201 if s.status != "failed" else 200)


@settlements_bp.post("/settlements/<int:settlement_id>/verify")
@login_required
def verify(settlement_id: int):
    s = settlement_engine.get_settlement(settlement_id)
    if not _can_view(s):
        raise NotAuthorized()
    s = settlement_engine.verify(s.id)
    return _settlement_response(s)


def _event_id(payload: dict, charge_id: str, status: str) -> str:
    event_id = str(payload.get("id") or payload.get("event_id") or "").strip()
    if event_id:
        return event_id[:128]
    base = f"{payload.get('event_type', '')}:{charge_id}:{status}"
    return hashlib.sha256(base.encode("utf-8")).hexdigest()[:32]


@webhooks_bp.post("/paychangu")
def paychangu_webhook():
    raw = request.get_data() or b""
    cfg = current_app.config
    secret = cfg.get("PAYCHANGU_WEBHOOK_SECRET") or ""
    sig = request.headers.get("Signature") or request.headers.get("X-Paychangu-Signature")
    verified = verify_signature(secret, raw, sig) if (secret and sig) else False
    if secret and sig and not verified:
        current_app.logger.warning("paychangu webhook rejected: bad signature")
        return jsonify({"success": False, "error": "Invalid signature", "kind": "Unauthorized"}), 401
    if cfg.get("PAYCHANGU_WEBHOOK_STRICT") and not verified:
        return jsonify({"success": False, "error": "Invalid signature", "kind": "Unauthorized"}), 401

    payload = request.get_json(silent=True) or {}
    data = payload.get("data") or {}
    txn = data.get("transaction") or data or {}
    charge_id = str(txn.get("charge_id") or txn.get("tx_ref") or payload.get("charge_id") or "").strip()
    raw_status = str(txn.get("status") or payload.get("status") or "").strip()
    if not charge_id:
        return jsonify({"success": False, "error": "Invalid webhook data", "kind": "InvalidIntent"}), 400

    event_id = _event_id(payload, charge_id, raw_status)
    if WebhookEvent.query.filter_by(provider="paychangu", event_id=event_id).first():
        return jsonify({"success": True, "replayed": True, "verified": verified}), 200

    s = settlement_engine.find_by_key(charge_id)
    try:
        db.session.add(WebhookEvent(
            provider="paychangu",
            event_id=event_id,
            charge_id=charge_id[:160],
            raw_status=raw_status[:32],
            signature_verified=verified,
            settlement_id=s.id if s else None,
        ))
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return jsonify({"success": True, "replayed": True, "verified": verified}), 200

    if not s:
        current_app.logger.warning("paychangu webhook for unknown charge_id=%s", charge_id)
        return jsonify({"success": True, "received": True, "matched": False}), 200

    record_audit(
        "paychangu_webhook",
        target_type="settlement",
        target_id=s.id,
        meta={"verified": verified, "event_type": payload.get("event_type"), "status": raw_status},
    )
    s = settlement_engine.reconcile(
        s.id,
        map_status(raw_status),
        external_ref=str(txn.get("ref_id") or "") or None,
        failure_reason=str(txn.get("failure_reason") or txn.get("message") or "") or None,
    )
    return jsonify({"success": True, "received": True, "status": s.status, "verified": verified}), 200
