from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from payfesa.models import PaymentAccount
from payfesa.services.accounts import register_account

accounts_bp = Blueprint("accounts_bp", __name__, url_prefix="/api/accounts")


@accounts_bp.post("")
@login_required
def add_account():
    data = request.get_json(silent=True) or {}
    rail = (data.get("rail") or "").strip()
    acct = register_account(
        int(current_user.id),
        rail=rail,
        provider=data.get("provider") or data.get("bank_name") or "",
        phone_number=data.get("phone_number"),
        account_number=data.get("account_number"),
        account_name=data.get("account_name") or current_user.name,
        is_primary=bool(data.get("is_primary")),
    )
    return jsonify({"success": True, "account": acct.to_dict()}), 201


@accounts_bp.get("")
@login_required
def list_accounts():
    rows = (
        PaymentAccount.query.filter_by(user_id=int(current_user.id))
        .order_by(PaymentAccount.is_primary.desc(), PaymentAccount.created_at.desc())
        .all()
    )
    return jsonify({"success": True, "items": [a.to_dict() for a in rows]}), 200
