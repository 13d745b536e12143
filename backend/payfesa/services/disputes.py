from __future__ import annotations

import json
from datetime import datetime

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from payfesa.errors import (
    AlreadyResolved,
    DuplicateDispute,
    InvalidIntent,
    InvalidReason,
    MissingNotes,
    NotAuthorized,
    NotFound,
)
from payfesa.extensions import db
from payfesa.models import PaymentDispute, Settlement, User
from payfesa.models.dispute import DISPUTE_TYPES, OPEN_STATUSES, STATUS_APPROVING
from payfesa.services import settlement_engine
from payfesa.services.settlement_engine import IntentRequest
from payfesa.utils.audit import record_audit
from payfesa.utils.notify import emit
from payfesa.utils.rate_limit import enforce_rate_limit

RESOLUTIONS = ("approved", "rejected")


def refund_key(dispute: PaymentDispute) -> str:
    return f"DISPUTE-{int(dispute.id)}"


def file_dispute(*, settlement_id: int, user_id: int, dispute_type: str, reason: str,
                 evidence: dict | None = None) -> PaymentDispute:
    cfg = current_app.config
    reason = (reason or "").strip()
    if len(reason) < int(cfg.get("DISPUTE_MIN_REASON_LENGTH", 10)):
        raise InvalidReason()
    dispute_type = (dispute_type or "").strip().lower()
    if dispute_type not in DISPUTE_TYPES:
        raise InvalidIntent(f"Dispute type must be one of: {', '.join(DISPUTE_TYPES)}")

    s = db.session.get(Settlement, int(settlement_id)) if settlement_id else None
    if not s or int(s.user_id) != int(user_id):
        raise NotAuthorized("Transaction not found or does not belong to you")

    enforce_rate_limit(
        str(int(user_id)),
        "file-dispute",
        int(cfg.get("DISPUTE_MAX_PER_WINDOW", 10)),
        int(cfg.get("DISPUTE_WINDOW_MINUTES", 60)),
    )

    open_dispute = PaymentDispute.query.filter(
        PaymentDispute.settlement_id == s.id,
        PaymentDispute.status.in_(OPEN_STATUSES),
    ).first()
    if open_dispute:
        raise DuplicateDispute()

    d = PaymentDispute(
        settlement_id=s.id,
        user_id=int(user_id),
        dispute_type=dispute_type,
        reason=reason,
        evidence=json.dumps(evidence or {}, default=str),
        amount=int(s.gross_amount),
        status="pending",
    )
    try:
        db.session.add(d)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise DuplicateDispute()

    current_app.logger.info("dispute %s filed on settlement %s by user %s", d.id, s.id, user_id)
    record_audit("dispute_filed", actor_user_id=int(user_id), target_type="dispute", target_id=d.id,
                 meta={"settlement_id": s.id, "type": dispute_type})
    emit(
        int(user_id),
        "dispute_submitted",
        "Dispute Submitted",
        "Your dispute has been submitted and will be reviewed within 24-48 hours.",
        reference=f"dispute:{d.id}",
        meta={"dispute_id": d.id, "settlement_id": s.id},
    )
    return d


def _mark_resolved(d: PaymentDispute, *, status: str, notes: str, admin_id: int, from_status: str = "pending",
                   refund_settlement_id: int | None = None) -> bool:
    result = db.session.execute(
        update(PaymentDispute)
        .where(PaymentDispute.id == d.id, PaymentDispute.status == from_status)
        .values(
            status=status,
            admin_notes=notes,
            resolved_at=datetime.utcnow(),
            resolved_by=int(admin_id),
            refund_settlement_id=refund_settlement_id,
        )
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount == 1


def _claim_for_approval(d: PaymentDispute) -> bool:
    """Move a pending dispute to ``approving`` so no other resolution can land while the refund is sent."""
    result = db.session.execute(
        update(PaymentDispute)
        .where(PaymentDispute.id == d.id, PaymentDispute.status == "pending")
        .values(status=STATUS_APPROVING)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount == 1


def _release_claim(d: PaymentDispute) -> None:
    db.session.rollback()
    db.session.execute(
        update(PaymentDispute)
        .where(PaymentDispute.id == d.id, PaymentDispute.status == STATUS_APPROVING)
        .values(status="pending")
        .execution_options(synchronize_session=False)
    )
    db.session.commit()


def _submit_refund(d: PaymentDispute, admin: User) -> Settlement:
    disputed = settlement_engine.get_settlement(d.settlement_id)
    return settlement_engine.submit(
        IntentRequest(
            direction="refund",
            user_id=int(d.user_id),
            group_id=disputed.intent.group_id,
            gross_amount=int(d.amount),
            rail=disputed.intent.rail,
            rail_details=disputed.intent.details,
            idempotency_key=refund_key(d),
            source_type="dispute",
            source_id=d.id,
        ),
        actor_user_id=admin.id,
    )


def resolve_dispute(dispute_id: int, *, resolution: str, admin_notes: str, admin_id: int) -> PaymentDispute:
    admin = db.session.get(User, int(admin_id)) if admin_id else None
    if not admin or not admin.is_admin:
        raise NotAuthorized("Admin access required")

    d = db.session.get(PaymentDispute, int(dispute_id), populate_existing=True)
    if not d:
        raise NotFound("Dispute not found")
    resolution = (resolution or "").strip().lower()
    if resolution not in RESOLUTIONS:
        raise InvalidIntent("Resolution must be 'approved' or 'rejected'")
    if d.status != "pending":
        raise AlreadyResolved()
    notes = (admin_notes or "").strip()
    if not notes:
        raise MissingNotes()

    if resolution == "approved":
        if not _claim_for_approval(d):
            raise AlreadyResolved()
        # The dispute goes back to pending unless the refund intent is accepted.
        try:
            refund = _submit_refund(d, admin)
        except Exception:
            _release_claim(d)
            raise
        resolved = _mark_resolved(d, status=resolution, notes=notes, admin_id=admin.id,
                                  from_status=STATUS_APPROVING, refund_settlement_id=refund.id)
    else:
        resolved = _mark_resolved(d, status=resolution, notes=notes, admin_id=admin.id)
    if not resolved:
        raise AlreadyResolved()
    db.session.refresh(d)

    current_app.logger.info("dispute %s %s by admin %s", d.id, resolution, admin.id)
    record_audit(
        f"dispute_{resolution}",
        actor_user_id=admin.id,
        target_type="dispute",
        target_id=d.id,
        meta={"refund_settlement_id": d.refund_settlement_id, "amount": int(d.amount)},
    )
    if resolution == "approved":
        title, message = "Dispute Resolved", "Your dispute has been approved. A refund is being processed."
    else:
        title, message = "Dispute Rejected", f"Your dispute has been reviewed and rejected. Notes: {notes}"
    emit(int(d.user_id), f"dispute_{resolution}", title, message, reference=f"dispute:{d.id}",
         meta={"dispute_id": d.id, "status": d.status})
    return d
