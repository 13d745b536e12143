from datetime import datetime

from payfesa.extensions import db


class Contribution(db.Model):
    __tablename__ = "contributions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    group_id = db.Column(db.Integer, db.ForeignKey("rosca_groups.id"), nullable=False, index=True)

    amount = db.Column(db.BigInteger, nullable=False, default=0)
    rail = db.Column(db.String(24), nullable=False)
    status = db.Column(db.String(24), nullable=False, default="pending")  # pending|processing|completed|failed

    settlement_id = db.Column(db.Integer, db.ForeignKey("settlements.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "group_id": int(self.group_id),
            "amount": int(self.amount or 0),
            "rail": self.rail,
            "status": self.status,
            "settlement_id": int(self.settlement_id) if self.settlement_id else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
