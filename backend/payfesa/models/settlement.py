import json
from datetime import datetime

from payfesa.extensions import db

DIRECTIONS = ("collection", "payout", "refund")
RAILS = ("mobile_money", "bank_transfer")

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)

# pending -> processing|failed, processing -> completed|failed; terminal states never move.
ALLOWED_TRANSITIONS = {
    STATUS_PENDING: {STATUS_PROCESSING, STATUS_FAILED},
    STATUS_PROCESSING: {STATUS_COMPLETED, STATUS_FAILED},
    STATUS_COMPLETED: set(),
    STATUS_FAILED: set(),
}


class SettlementIntent(db.Model):
    """Immutable request to move money for one member. Never updated after insert."""

    __tablename__ = "settlement_intents"

    id = db.Column(db.Integer, primary_key=True)

    direction = db.Column(db.String(16), nullable=False)  # collection | payout | refund
    group_id = db.Column(db.Integer, db.ForeignKey("rosca_groups.id"), nullable=True, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    gross_amount = db.Column(db.BigInteger, nullable=False)
    rail = db.Column(db.String(24), nullable=False)
    rail_details = db.Column(db.Text, nullable=False, default="{}")

    # Sent to the rail as charge_id; one settlement per key.
    idempotency_key = db.Column(db.String(160), nullable=False, unique=True, index=True)

    # What the intent settles: contribution | payout | dispute
    source_type = db.Column(db.String(24), nullable=True)
    source_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    @property
    def details(self) -> dict:
        try:
            return json.loads(self.rail_details or "{}")
        except ValueError:
            return {}

    def to_dict(self):
        return {
            "id": int(self.id),
            "direction": self.direction,
            "group_id": int(self.group_id) if self.group_id else None,
            "user_id": int(self.user_id),
            "gross_amount": int(self.gross_amount),
            "rail": self.rail,
            "rail_details": self.details,
            "idempotency_key": self.idempotency_key,
            "source_type": self.source_type,
            "source_id": self.source_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Settlement(db.Model):
    __tablename__ = "settlements"

    id = db.Column(db.Integer, primary_key=True)
    intent_id = db.Column(db.Integer, db.ForeignKey("settlement_intents.id"), nullable=False, unique=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default=STATUS_PENDING)

    # Fee breakdown captured at acceptance (minor units)
    gross_amount = db.Column(db.BigInteger, nullable=False, default=0)
    reserve_fee = db.Column(db.BigInteger, nullable=False, default=0)
    platform_fee = db.Column(db.BigInteger, nullable=False, default=0)
    net_amount = db.Column(db.BigInteger, nullable=False, default=0)
    dispatch_amount = db.Column(db.BigInteger, nullable=False, default=0)
    reserve_credited = db.Column(db.Boolean, nullable=False, default=False)

    external_reference = db.Column(db.String(128), nullable=True, index=True)
    trace_id = db.Column(db.String(128), nullable=True)
    payment_account_details = db.Column(db.Text, nullable=True)
    failure_reason = db.Column(db.String(500), nullable=True)
    needs_reconciliation = db.Column(db.Boolean, nullable=False, default=False)

    # A failed settlement can be retried at most once; the retry is a new row.
    retry_of_id = db.Column(db.Integer, db.ForeignKey("settlements.id"), nullable=True, unique=True)
    attempt = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    processing_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    failed_at = db.Column(db.DateTime, nullable=True)
    processed_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    intent = db.relationship("SettlementIntent", lazy="joined")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def direction(self) -> str:
        return self.intent.direction if self.intent else ""

    def to_dict(self):
        account_details = None
        if self.payment_account_details:
            try:
                account_details = json.loads(self.payment_account_details)
            except ValueError:
                account_details = None
        return {
            "id": int(self.id),
            "intent_id": int(self.intent_id),
            "user_id": int(self.user_id),
            "direction": self.direction,
            "rail": self.intent.rail if self.intent else "",
            "group_id": int(self.intent.group_id) if self.intent and self.intent.group_id else None,
            "idempotency_key": self.intent.idempotency_key if self.intent else "",
            "status": self.status,
            "gross_amount": int(self.gross_amount or 0),
            "reserve_fee": int(self.reserve_fee or 0),
            "platform_fee": int(self.platform_fee or 0),
            "net_amount": int(self.net_amount or 0),
            "dispatch_amount": int(self.dispatch_amount or 0),
            "external_reference": self.external_reference or None,
            "trace_id": self.trace_id or None,
            "payment_account_details": account_details,
            "failure_reason": self.failure_reason or None,
            "needs_reconciliation": bool(self.needs_reconciliation),
            "retry_of": int(self.retry_of_id) if self.retry_of_id else None,
            "attempt": int(self.attempt or 1),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "processing_at": self.processing_at.isoformat() if self.processing_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }
