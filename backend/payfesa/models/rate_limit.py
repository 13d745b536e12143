from datetime import datetime

from payfesa.extensions import db


class RateLimitHit(db.Model):
    __tablename__ = "rate_limit_hits"
    __table_args__ = (db.Index("ix_rate_limit_hits_lookup", "identifier", "endpoint", "created_at"),)

    id = db.Column(db.Integer, primary_key=True)
    identifier = db.Column(db.String(128), nullable=False)
    endpoint = db.Column(db.String(64), nullable=False)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
