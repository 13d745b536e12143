from __future__ import annotations

from flask import current_app

from payfesa.errors import NotAuthorized, NotRetryable
from payfesa.extensions import db
from payfesa.models import Settlement, User
from payfesa.models.settlement import STATUS_FAILED
from payfesa.services import settlement_engine
from payfesa.services.accounts import account_details, resolve_account
from payfesa.services.settlement_engine import IntentRequest
from payfesa.utils.audit import record_audit
from payfesa.utils.rate_limit import enforce_rate_limit


def retry_key(settlement: Settlement) -> str:
    return f"RETRY-{int(settlement.id)}"


def retry_settlement(settlement_id: int, *, actor_user_id: int, account_id: int | None = None,
                     rail: str | None = None, rail_details: dict | None = None) -> Settlement:
    """Re-dispatch a failed settlement as a new attempt linked to it.

    Amount, direction and source are cloned from the failed attempt. The
    destination is cloned too unless a different account (or explicit rail
    details) is supplied. Retrying an already-retried settlement returns the
    existing retry.
    """
    source = settlement_engine.get_settlement(settlement_id)
    actor = db.session.get(User, int(actor_user_id)) if actor_user_id else None
    if not actor or (int(source.user_id) != int(actor.id) and not actor.is_admin):
        raise NotAuthorized("You can only retry your own settlements")

    if source.status != STATUS_FAILED:
        raise NotRetryable(f"Only failed settlements can be retried (status is {source.status})")

    existing = Settlement.query.filter_by(retry_of_id=source.id).first()
    if existing:
        return existing

    cfg = current_app.config
    max_retries = int(cfg.get("RETRY_MAX_PER_SETTLEMENT", 3))
    if int(source.attempt or 1) > max_retries:
        raise NotRetryable(f"Maximum retry attempts reached ({max_retries})")

    enforce_rate_limit(
        str(actor.id),
        "retry-settlement",
        int(cfg.get("RETRY_MAX_ATTEMPTS", 5)),
        int(cfg.get("RETRY_WINDOW_MINUTES", 60)),
    )

    intent = source.intent
    new_rail, new_details = intent.rail, intent.details
    if account_id:
        acct = resolve_account(int(source.user_id), account_id)
        new_rail, new_details = acct.rail, account_details(acct)
    elif rail_details:
        new_rail = rail or intent.rail
        new_details = rail_details

    s = settlement_engine.submit(
        IntentRequest(
            direction=intent.direction,
            user_id=int(intent.user_id),
            group_id=intent.group_id,
            gross_amount=int(intent.gross_amount),
            rail=new_rail,
            rail_details=new_details,
            idempotency_key=retry_key(source),
            source_type=intent.source_type,
            source_id=intent.source_id,
            retry_of_id=source.id,
            attempt=int(source.attempt or 1) + 1,
        ),
        actor_user_id=actor.id,
    )
    current_app.logger.info("settlement %s retried by user %s as settlement %s (%s)", source.id, actor.id, s.id, s.status)
    record_audit(
        "settlement_retry",
        actor_user_id=actor.id,
        target_type="settlement",
        target_id=source.id,
        meta={"retry_settlement_id": s.id, "status": s.status, "rail": new_rail},
    )
    return s
