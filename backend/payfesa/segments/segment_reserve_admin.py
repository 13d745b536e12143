from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from payfesa.errors import InvalidAmount, InvalidIntent, NotAuthorized
from payfesa.jobs.reserve_reconciler import reconcile_reserve
from payfesa.models import AuditLog, ReserveTransaction
from payfesa.utils import reserve
from payfesa.utils.audit import record_audit

reserve_admin_bp = Blueprint("reserve_admin_bp", __name__, url_prefix="/api/admin")


def _require_admin():
    if not current_user.is_admin:
        raise NotAuthorized("Admin access required")


def _limit(default: int = 200, cap: int = 1000) -> int:
    try:
        return max(1, min(int(request.args.get("limit") or default), cap))
    except (TypeError, ValueError):
        return default


@reserve_admin_bp.get("/reserve")
@login_required
def reserve_summary():
    _require_admin()
    w = reserve.get_or_create_reserve()
    return jsonify({
        "success": True,
        "reserve": w.to_dict(),
        "ledger_balance": reserve.ledger_sum(),
        "currency": current_app.config.get("SETTLEMENT_CURRENCY", "MWK"),
    }), 200


@reserve_admin_bp.get("/reserve/ledger")
@login_required
def reserve_ledger():
    _require_admin()
    q = ReserveTransaction.query
    group_id = request.args.get("group_id")
    if group_id and str(group_id).isdigit():
        q = q.filter(ReserveTransaction.group_id == int(group_id))
    rows = q.order_by(ReserveTransaction.created_at.desc(), ReserveTransaction.id.desc()).limit(_limit()).all()
    return jsonify({"success": True, "items": [t.to_dict() for t in rows]}), 200


@reserve_admin_bp.post("/reserve/adjust")
@login_required
def reserve_adjust():
    _require_admin()
    data = request.get_json(silent=True) or {}
    amount = data.get("amount")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
        raise InvalidAmount("Adjustment must be a non-zero whole amount")
    reason = (data.get("reason") or "").strip()
    if not reason:
        raise InvalidIntent("A reason is required for reserve adjustments")

    entry = reserve.add_to_reserve_wallet(amount, None, None, f"Admin adjustment: {reason}")
    current_app.logger.info("reserve adjusted by %s by admin %s", amount, current_user.id)
    record_audit(
        "reserve_adjusted",
        actor_user_id=int(current_user.id),
        target_type="reserve_wallet",
        target_id=None,
        meta={"amount": amount, "reason": reason, "balance_after": int(entry.balance_after)},
    )
    return jsonify({"success": True, "entry": entry.to_dict(), "balance": reserve.cached_balance()}), 200


@reserve_admin_bp.post("/reserve/reconcile")
@login_required
def reserve_reconcile():
    _require_admin()
    return jsonify({"success": True, **reconcile_reserve()}), 200


@reserve_admin_bp.get("/audit")
@login_required
def audit_log():
    _require_admin()
    q = AuditLog.query
    action = (request.args.get("action") or "").strip()
    if action:
        q = q.filter(AuditLog.action == action)
    rows = q.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(_limit()).all()
    return jsonify({"success": True, "items": [a.to_dict() for a in rows]}), 200
