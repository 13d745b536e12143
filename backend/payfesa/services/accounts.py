from __future__ import annotations

from payfesa.errors import InvalidIntent, NotAuthorized, NotFound
from payfesa.extensions import db
from payfesa.models import PaymentAccount, User
from payfesa.utils.rails import resolve_rail


def register_account(user_id: int, *, rail: str, provider: str, phone_number: str | None = None,
                     account_number: str | None = None, account_name: str | None = None,
                     is_primary: bool = False) -> PaymentAccount:
    """Store a settlement destination after resolving it like a settlement would."""
    acct = PaymentAccount(
        user_id=int(user_id),
        rail=(rail or "").strip(),
        provider=(provider or "").strip(),
        phone_number=(phone_number or "").strip() or None,
        account_number=(account_number or "").strip() or None,
        account_name=(account_name or "").strip() or None,
    )
    resolved = resolve_rail(acct.rail, account_details(acct))
    if acct.rail == "mobile_money":
        acct.phone_number = resolved.phone_number

    has_any = PaymentAccount.query.filter_by(user_id=int(user_id)).first() is not None
    try:
        if is_primary or not has_any:
            PaymentAccount.query.filter_by(user_id=int(user_id), is_primary=True).update({"is_primary": False})
            acct.is_primary = True
        db.session.add(acct)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return acct


def resolve_account(user_id: int, account_id: int | None = None) -> PaymentAccount:
    """Pick the destination account: the one asked for, else the member's primary."""
    if account_id:
        acct = db.session.get(PaymentAccount, int(account_id))
        if not acct:
            raise NotFound("Payment account not found")
        if int(acct.user_id) != int(user_id):
            raise NotAuthorized("Payment account belongs to another member")
        return acct
    acct = (
        PaymentAccount.query.filter_by(user_id=int(user_id))
        .order_by(PaymentAccount.is_primary.desc(), PaymentAccount.created_at.desc())
        .first()
    )
    if not acct:
        raise InvalidIntent("No payment method configured. Please add a payment method.")
    return acct


def account_details(acct: PaymentAccount) -> dict:
    details = acct.rail_details()
    if not details.get("account_name") and acct.user_id:
        owner = db.session.get(User, int(acct.user_id))
        if owner and owner.name:
            details["account_name"] = owner.name
    return details
