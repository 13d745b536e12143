from datetime import datetime

from payfesa.extensions import db


class Payout(db.Model):
    """The pooled amount a member is owed for one group cycle."""

    __tablename__ = "payouts"

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey("rosca_groups.id"), nullable=False, index=True)
    recipient_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    gross_amount = db.Column(db.BigInteger, nullable=False, default=0)
    status = db.Column(db.String(24), nullable=False, default="pending")  # pending|processing|completed|failed

    # Latest settlement attempt for this payout
    settlement_id = db.Column(db.Integer, db.ForeignKey("settlements.id"), nullable=True, index=True)
    reserve_covered_amount = db.Column(db.BigInteger, nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    processed_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            "id": int(self.id),
            "group_id": int(self.group_id),
            "recipient_id": int(self.recipient_id),
            "gross_amount": int(self.gross_amount or 0),
            "status": self.status,
            "settlement_id": int(self.settlement_id) if self.settlement_id else None,
            "reserve_covered_amount": int(self.reserve_covered_amount or 0),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }
