from datetime import datetime

from payfesa.extensions import db


class WebhookEvent(db.Model):
    """One row per gateway callback processed; a second delivery of the same event is a replay."""

    __tablename__ = "webhook_events"
    __table_args__ = (db.UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),)

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(32), nullable=False, default="paychangu")
    event_id = db.Column(db.String(128), nullable=False)

    charge_id = db.Column(db.String(160), nullable=True, index=True)
    raw_status = db.Column(db.String(32), nullable=True)
    signature_verified = db.Column(db.Boolean, nullable=False, default=False)
    settlement_id = db.Column(db.Integer, db.ForeignKey("settlements.id"), nullable=True)

    received_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "provider": self.provider,
            "event_id": self.event_id,
            "charge_id": self.charge_id or "",
            "raw_status": self.raw_status or "",
            "signature_verified": bool(self.signature_verified),
            "settlement_id": int(self.settlement_id) if self.settlement_id else None,
            "received_at": self.received_at.isoformat() if self.received_at else None,
        }
