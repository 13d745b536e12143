import json
from datetime import datetime

from payfesa.extensions import db

DISPUTE_TYPES = ("wrong_amount", "unauthorized", "not_received", "duplicate", "other")

# An approval holds the dispute in "approving" while its refund is submitted.
STATUS_APPROVING = "approving"
OPEN_STATUSES = ("pending", STATUS_APPROVING)


class PaymentDispute(db.Model):
    __tablename__ = "payment_disputes"
    __table_args__ = (
        # At most one open dispute per settlement.
        db.Index(
            "uq_payment_disputes_open_settlement",
            "settlement_id",
            unique=True,
            sqlite_where=db.text("status IN ('pending', 'approving')"),
            postgresql_where=db.text("status IN ('pending', 'approving')"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    settlement_id = db.Column(db.Integer, db.ForeignKey("settlements.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    dispute_type = db.Column(db.String(24), nullable=False)
    reason = db.Column(db.Text, nullable=False)
    evidence = db.Column(db.Text, nullable=True)
    amount = db.Column(db.BigInteger, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default="pending")  # pending|approving|approved|rejected
    admin_notes = db.Column(db.Text, nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    resolved_by = db.Column(db.Integer, nullable=True)

    # Compensating settlement created on approval
    refund_settlement_id = db.Column(db.Integer, db.ForeignKey("settlements.id"), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        try:
            evidence = json.loads(self.evidence) if self.evidence else {}
        except ValueError:
            evidence = {}
        return {
            "id": int(self.id),
            "transaction_id": int(self.settlement_id),
            "user_id": int(self.user_id),
            "type": self.dispute_type,
            "reason": self.reason,
            "evidence": evidence,
            "amount": int(self.amount or 0),
            "status": self.status,
            "admin_notes": self.admin_notes or "",
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": int(self.resolved_by) if self.resolved_by else None,
            "refund_settlement_id": int(self.refund_settlement_id) if self.refund_settlement_id else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
