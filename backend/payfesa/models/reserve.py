from datetime import datetime

from payfesa.extensions import db

RESERVE_WALLET_ID = 1


class ReserveWallet(db.Model):
    """Singleton cache of the reserve balance. The ledger is the source of truth."""

    __tablename__ = "reserve_wallet"
    __table_args__ = (db.CheckConstraint("balance >= 0", name="ck_reserve_wallet_balance_floor"),)

    id = db.Column(db.Integer, primary_key=True)

    balance = db.Column(db.BigInteger, nullable=False, default=0)
    total_in = db.Column(db.BigInteger, nullable=False, default=0)
    total_out = db.Column(db.BigInteger, nullable=False, default=0)

    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "balance": int(self.balance or 0),
            "total_in": int(self.total_in or 0),
            "total_out": int(self.total_out or 0),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class ReserveTransaction(db.Model):
    __tablename__ = "reserve_transactions"

    id = db.Column(db.Integer, primary_key=True)

    entry_type = db.Column(db.String(16), nullable=False)  # reserve_in | reserve_out
    amount = db.Column(db.BigInteger, nullable=False)
    balance_after = db.Column(db.BigInteger, nullable=False, default=0)

    group_id = db.Column(db.Integer, nullable=True, index=True)
    user_id = db.Column(db.Integer, nullable=True, index=True)
    settlement_id = db.Column(db.Integer, nullable=True, index=True)
    reason = db.Column(db.String(240), nullable=False, default="")

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "type": self.entry_type,
            "amount": int(self.amount),
            "balance_after": int(self.balance_after or 0),
            "group_id": int(self.group_id) if self.group_id else None,
            "user_id": int(self.user_id) if self.user_id else None,
            "settlement_id": int(self.settlement_id) if self.settlement_id else None,
            "reason": self.reason or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
