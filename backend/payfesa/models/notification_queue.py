from datetime import datetime

from payfesa.extensions import db


class NotificationQueue(db.Model):
    """Outbound notification events. A separate worker delivers them."""

    __tablename__ = "notification_queue"

    id = db.Column(db.Integer, primary_key=True)
    channel = db.Column(db.String(32), nullable=False, default="push")
    to = db.Column(db.String(128), nullable=False)
    event = db.Column(db.String(64), nullable=False, default="")
    title = db.Column(db.String(160), nullable=False, default="")
    message = db.Column(db.Text, nullable=False)
    meta = db.Column(db.Text, nullable=True)

    # queued -> sent / failed / dead
    status = db.Column(db.String(32), nullable=False, default="queued")
    reference = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    sent_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            "id": int(self.id),
            "channel": self.channel,
            "to": self.to,
            "event": self.event or "",
            "title": self.title or "",
            "message": self.message,
            "meta": self.meta or "",
            "status": self.status,
            "reference": self.reference or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }
