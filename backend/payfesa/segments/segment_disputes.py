from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from payfesa.errors import NotAuthorized
from payfesa.models import PaymentDispute
from payfesa.services.disputes import file_dispute, resolve_dispute

disputes_bp = Blueprint("disputes_bp", __name__, url_prefix="/api")


@disputes_bp.post("/disputes")
@login_required
def create_dispute():
    data = request.get_json(silent=True) or {}
    try:
        settlement_id = int(data.get("transaction_id") or data.get("settlement_id") or 0)
    except (TypeError, ValueError):
        settlement_id = 0
    evidence = data.get("evidence") if isinstance(data.get("evidence"), dict) else None
    d = file_dispute(
        settlement_id=settlement_id,
        user_id=int(current_user.id),
        dispute_type=data.get("type") or data.get("dispute_type") or "",
        reason=data.get("reason") or "",
        evidence=evidence,
    )
    return jsonify({"success": True, "dispute": d.to_dict()}), 201


@disputes_bp.get("/disputes")
@login_required
def my_disputes():
    rows = (
        PaymentDispute.query.filter_by(user_id=int(current_user.id))
        .order_by(PaymentDispute.created_at.desc(), PaymentDispute.id.desc())
        .limit(200)
        .all()
    )
    return jsonify({"success": True, "items": [d.to_dict() for d in rows]}), 200


@disputes_bp.get("/admin/disputes")
@login_required
def admin_disputes():
    if not current_user.is_admin:
        raise NotAuthorized("Admin access required")
    q = PaymentDispute.query
    status = (request.args.get("status") or "").strip().lower()
    if status:
        q = q.filter(PaymentDispute.status == status)
    rows = q.order_by(PaymentDispute.created_at.desc(), PaymentDispute.id.desc()).limit(500).all()
    return jsonify({"success": True, "items": [d.to_dict() for d in rows]}), 200


@disputes_bp.post("/admin/disputes/<int:dispute_id>/resolve")
@login_required
def admin_resolve(dispute_id: int):
    data = request.get_json(silent=True) or {}
    d = resolve_dispute(
        dispute_id,
        resolution=data.get("resolution") or data.get("status") or "",
        admin_notes=data.get("admin_notes") or data.get("notes") or "",
        admin_id=int(current_user.id),
    )
    return jsonify({"success": True, "dispute": d.to_dict()}), 200
