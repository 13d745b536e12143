from datetime import datetime

from payfesa.extensions import db


class RoscaGroup(db.Model):
    __tablename__ = "rosca_groups"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False, default="")

    # Per-cycle contribution expected from each member, minor units
    contribution_amount = db.Column(db.BigInteger, nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "name": self.name or "",
            "contribution_amount": int(self.contribution_amount or 0),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
