from datetime import datetime

from payfesa.extensions import db


class PaymentAccount(db.Model):
    """A member's mobile money or bank account used as a settlement destination."""

    __tablename__ = "payment_accounts"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    rail = db.Column(db.String(24), nullable=False)  # mobile_money | bank_transfer
    provider = db.Column(db.String(80), nullable=False, default="")  # operator or bank name

    phone_number = db.Column(db.String(32), nullable=True)
    account_number = db.Column(db.String(40), nullable=True)
    account_name = db.Column(db.String(120), nullable=True)

    is_primary = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def rail_details(self) -> dict:
        if self.rail == "mobile_money":
            return {
                "phone_number": self.phone_number or "",
                "provider": self.provider or "",
                "account_name": self.account_name or "",
            }
        return {
            "bank_name": self.provider or "",
            "account_number": self.account_number or "",
            "account_name": self.account_name or "",
        }

    def to_dict(self):
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "rail": self.rail,
            "provider": self.provider or "",
            "phone_number": self.phone_number or "",
            "account_number": self.account_number or "",
            "account_name": self.account_name or "",
            "is_primary": bool(self.is_primary),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
