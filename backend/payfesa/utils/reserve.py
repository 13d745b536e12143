"""Reserve wallet ledger.

The reserve underwrites payout shortfalls. Every movement is an append-only
``reserve_transactions`` row; the ``reserve_wallet`` singleton caches the
balance and is only ever changed by the conditional updates below, in the same
transaction as the ledger row. A debit that would take the balance below zero
matches no row and is rejected.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from payfesa.errors import InsufficientReserve, InvalidAmount
from payfesa.extensions import db
from payfesa.models import ReserveTransaction, ReserveWallet
from payfesa.models.reserve import RESERVE_WALLET_ID

RESERVE_IN = "reserve_in"
RESERVE_OUT = "reserve_out"


def get_or_create_reserve() -> ReserveWallet:
    w = db.session.get(ReserveWallet, RESERVE_WALLET_ID, populate_existing=True)
    if w:
        return w
    w = ReserveWallet(id=RESERVE_WALLET_ID, balance=0, total_in=0, total_out=0)
    try:
        db.session.add(w)
        db.session.commit()
        return w
    except IntegrityError:
        db.session.rollback()
        w = db.session.get(ReserveWallet, RESERVE_WALLET_ID)
        if w:
            return w
        raise


def _ensure_row() -> None:
    if db.session.get(ReserveWallet, RESERVE_WALLET_ID) is None:
        db.session.add(ReserveWallet(id=RESERVE_WALLET_ID, balance=0, total_in=0, total_out=0))
        db.session.flush()


def _positive(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount("Reserve movements must be positive whole amounts")
    return amount


def _cached_balance() -> int:
    return int(db.session.execute(
        select(ReserveWallet.balance).where(ReserveWallet.id == RESERVE_WALLET_ID)
    ).scalar_one())


def _append(entry_type: str, amount: int, *, group_id, user_id, reason, settlement_id) -> ReserveTransaction:
    row = ReserveTransaction(
        entry_type=entry_type,
        amount=amount,
        balance_after=_cached_balance(),
        group_id=group_id,
        user_id=user_id,
        settlement_id=settlement_id,
        reason=(reason or "")[:240],
        created_at=datetime.utcnow(),
    )
    db.session.add(row)
    db.session.flush()
    return row


def credit(
    amount: int,
    *,
    group_id: int | None = None,
    user_id: int | None = None,
    reason: str = "",
    settlement_id: int | None = None,
    commit: bool = True,
) -> ReserveTransaction:
    amt = _positive(amount)
    try:
        _ensure_row()
        db.session.execute(
            update(ReserveWallet)
            .where(ReserveWallet.id == RESERVE_WALLET_ID)
            .values(
                balance=ReserveWallet.balance + amt,
                total_in=ReserveWallet.total_in + amt,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        row = _append(RESERVE_IN, amt, group_id=group_id, user_id=user_id, reason=reason, settlement_id=settlement_id)
        if commit:
            db.session.commit()
        return row
    except Exception:
        if commit:
            db.session.rollback()
        raise


def debit(
    amount: int,
    *,
    group_id: int | None = None,
    user_id: int | None = None,
    reason: str = "",
    settlement_id: int | None = None,
    commit: bool = True,
) -> ReserveTransaction:
    amt = _positive(amount)
    try:
        _ensure_row()
        result = db.session.execute(
            update(ReserveWallet)
            .where(ReserveWallet.id == RESERVE_WALLET_ID, ReserveWallet.balance >= amt)
            .values(
                balance=ReserveWallet.balance - amt,
                total_out=ReserveWallet.total_out + amt,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InsufficientReserve(f"Reserve wallet cannot cover {amt}")
        row = _append(RESERVE_OUT, amt, group_id=group_id, user_id=user_id, reason=reason, settlement_id=settlement_id)
        if commit:
            db.session.commit()
        return row
    except Exception:
        if commit:
            db.session.rollback()
        raise


def add_to_reserve_wallet(amount: int, group_id: int | None = None, user_id: int | None = None, reason: str = "",
                          *, settlement_id: int | None = None, commit: bool = True) -> ReserveTransaction:
    """Signed entry point: positive amounts credit the reserve, negative amounts debit it."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
        raise InvalidAmount("Reserve adjustment must be a non-zero whole amount")
    if amount > 0:
        return credit(amount, group_id=group_id, user_id=user_id, reason=reason, settlement_id=settlement_id, commit=commit)
    return debit(-amount, group_id=group_id, user_id=user_id, reason=reason, settlement_id=settlement_id, commit=commit)


def ledger_sum() -> int:
    credits = db.session.query(func.coalesce(func.sum(ReserveTransaction.amount), 0)).filter(
        ReserveTransaction.entry_type == RESERVE_IN,
    ).scalar() or 0
    debits = db.session.query(func.coalesce(func.sum(ReserveTransaction.amount), 0)).filter(
        ReserveTransaction.entry_type == RESERVE_OUT,
    ).scalar() or 0
    return int(credits) - int(debits)


def current_balance() -> int:
    return ledger_sum()


def cached_balance() -> int:
    w = db.session.get(ReserveWallet, RESERVE_WALLET_ID, populate_existing=True)
    return int(w.balance or 0) if w else 0
