import pytest

from payfesa.errors import NotAuthorized, NotRetryable, RateLimited
from payfesa.models import PaymentAccount, Settlement
from payfesa.services import settlement_engine
from payfesa.services.retries import retry_settlement
from payfesa.services.settlement_engine import IntentRequest
from payfesa.extensions import db
from payfesa.utils import reserve

from conftest import MOBILE, rejected


def _failed_payout(user, gateway, key="payout:1", details=None):
    gateway.queue(rejected("Invalid mobile number"))
    return settlement_engine.submit(IntentRequest(
        direction="payout",
        user_id=user.id,
        gross_amount=50_000,
        rail="mobile_money",
        rail_details=details or {"phone_number": "0991111111", "provider": "airtel"},
        idempotency_key=key,
    ))


def test_retry_with_corrected_phone_links_new_settlement(member, gateway):
    failed = _failed_payout(member, gateway)
    assert failed.status == "failed"
    assert reserve.current_balance() == 0

    retry = retry_settlement(failed.id, actor_user_id=member.id, rail_details=MOBILE)

    assert retry.id != failed.id
    assert retry.retry_of_id == failed.id
    assert retry.attempt == 2
    assert retry.status == "processing"
    assert retry.intent.idempotency_key != failed.intent.idempotency_key
    assert retry.intent.details["phone_number"] == MOBILE["phone_number"]
    assert gateway.calls[-1].rail.phone_number == "991234567"
    # The retry carries its own reserve fee credit.
    assert reserve.current_balance() == 500
    # The failed attempt is untouched.
    assert db.session.get(Settlement, failed.id).status == "failed"


def test_retry_clones_destination_by_default(member, gateway):
    failed = _failed_payout(member, gateway)
    retry = retry_settlement(failed.id, actor_user_id=member.id)
    assert retry.intent.rail == failed.intent.rail
    assert retry.intent.details == failed.intent.details
    assert retry.gross_amount == failed.gross_amount


def test_retry_to_alternate_account(member, gateway):
    failed = _failed_payout(member, gateway)
    acct = PaymentAccount(user_id=member.id, rail="bank_transfer", provider="FDH Bank Limited",
                          account_number="555", account_name="Chikondi Banda")
    db.session.add(acct)
    db.session.commit()

    retry = retry_settlement(failed.id, actor_user_id=member.id, account_id=acct.id)

    assert retry.intent.rail == "bank_transfer"
    assert gateway.calls[-1].rail.account_number == "555"


def test_only_failed_settlements_are_retryable(member, gateway):
    s = settlement_engine.submit(IntentRequest(
        direction="payout", user_id=member.id, gross_amount=10_000, rail="mobile_money",
        rail_details=MOBILE, idempotency_key="payout:ok",
    ))
    with pytest.raises(NotRetryable):
        retry_settlement(s.id, actor_user_id=member.id)


def test_retry_is_idempotent_per_failed_settlement(member, gateway):
    failed = _failed_payout(member, gateway)
    first = retry_settlement(failed.id, actor_user_id=member.id)
    second = retry_settlement(failed.id, actor_user_id=member.id)
    assert first.id == second.id
    assert Settlement.query.filter_by(retry_of_id=failed.id).count() == 1


def test_failed_retry_can_itself_be_retried(member, gateway):
    failed = _failed_payout(member, gateway)
    gateway.queue(rejected("still wrong"))
    second = retry_settlement(failed.id, actor_user_id=member.id)
    assert second.status == "failed"

    third = retry_settlement(second.id, actor_user_id=member.id, rail_details=MOBILE)
    assert third.retry_of_id == second.id
    assert third.attempt == 3


def test_other_members_cannot_retry(member, other_member, gateway):
    failed = _failed_payout(member, gateway)
    with pytest.raises(NotAuthorized):
        retry_settlement(failed.id, actor_user_id=other_member.id)


def test_admin_can_retry_for_member(member, admin, gateway):
    failed = _failed_payout(member, gateway)
    retry = retry_settlement(failed.id, actor_user_id=admin.id, rail_details=MOBILE)
    assert retry.user_id == member.id


def test_retries_are_rate_limited_per_actor(app, member, gateway):
    app.config["RETRY_MAX_ATTEMPTS"] = 2
    failed = [_failed_payout(member, gateway, key=f"payout:{i}") for i in range(3)]

    retry_settlement(failed[0].id, actor_user_id=member.id)
    retry_settlement(failed[1].id, actor_user_id=member.id)
    with pytest.raises(RateLimited):
        retry_settlement(failed[2].id, actor_user_id=member.id)


def test_retry_chain_stops_after_three_retries(member, gateway):
    failed = _failed_payout(member, gateway)
    for attempt in (2, 3, 4):
        gateway.queue(rejected("still wrong"))
        failed = retry_settlement(failed.id, actor_user_id=member.id)
        assert (failed.attempt, failed.status) == (attempt, "failed")

    with pytest.raises(NotRetryable, match=r"Maximum retry attempts reached \(3\)"):
        retry_settlement(failed.id, actor_user_id=member.id)
    assert Settlement.query.count() == 4


def test_retry_cap_is_configurable(app, member, gateway):
    app.config["RETRY_MAX_PER_SETTLEMENT"] = 1
    failed = _failed_payout(member, gateway)
    gateway.queue(rejected("still wrong"))
    second = retry_settlement(failed.id, actor_user_id=member.id)

    with pytest.raises(NotRetryable):
        retry_settlement(second.id, actor_user_id=member.id)
