import pytest

from payfesa.errors import InsufficientReserve, InvalidIntent, NotAuthorized, UnsupportedOperator
from payfesa.extensions import db
from payfesa.models import AuditLog, Contribution, PaymentAccount, Payout, Settlement
from payfesa.services.accounts import register_account
from payfesa.services.payouts import (
    cover_payout_shortfall,
    payout_shortfall,
    request_instant_payout,
    submit_contribution,
    trigger_manual_payout,
)
from payfesa.utils import reserve

from conftest import BANK, MOBILE, rejected


def test_contribution_row_follows_settlement(member, group, gateway):
    s = submit_contribution(group_id=group.id, user_id=member.id, amount=50_000, rail="mobile_money",
                            rail_details=MOBILE, idempotency_key="PC100")

    c = Contribution.query.one()
    assert c.settlement_id == s.id
    assert c.status == "processing"
    assert s.intent.source_type == "contribution"
    assert s.intent.source_id == c.id


def test_contribution_generates_charge_id(member, group):
    s = submit_contribution(group_id=group.id, user_id=member.id, amount=10_000, rail="mobile_money",
                            rail_details=MOBILE)
    assert s.intent.idempotency_key.startswith("PC")


def test_repeated_contribution_key_does_not_double_charge(member, group, gateway):
    first = submit_contribution(group_id=group.id, user_id=member.id, amount=50_000, rail="mobile_money",
                                rail_details=MOBILE, idempotency_key="PC200")
    second = submit_contribution(group_id=group.id, user_id=member.id, amount=50_000, rail="mobile_money",
                                 rail_details=MOBILE, idempotency_key="PC200")
    assert first.id == second.id
    assert Contribution.query.count() == 1
    assert len(gateway.calls) == 1


def test_contribution_key_of_another_member_is_refused(member, other_member, group, gateway):
    submit_contribution(group_id=group.id, user_id=member.id, amount=50_000, rail="mobile_money",
                        rail_details=MOBILE, idempotency_key="SHARED")

    with pytest.raises(InvalidIntent):
        submit_contribution(group_id=group.id, user_id=other_member.id, amount=1_000, rail="mobile_money",
                            rail_details=MOBILE, idempotency_key="SHARED")
    with pytest.raises(InvalidIntent):
        submit_contribution(group_id=group.id, user_id=other_member.id, amount=50_000, rail="mobile_money",
                            rail_details=MOBILE, idempotency_key="SHARED")

    assert Settlement.query.count() == 1
    assert Contribution.query.count() == 1
    assert len(gateway.calls) == 1


def test_contribution_cannot_reuse_a_payout_key(member, payout, airtel_account, group):
    request_instant_payout(payout.id, user_id=member.id)
    with pytest.raises(InvalidIntent):
        submit_contribution(group_id=group.id, user_id=member.id, amount=1_000, rail="mobile_money",
                            rail_details=MOBILE, idempotency_key=f"payout:{payout.id}")


def test_same_key_with_different_amount_is_refused(member, group):
    submit_contribution(group_id=group.id, user_id=member.id, amount=50_000, rail="mobile_money",
                        rail_details=MOBILE, idempotency_key="PC300")
    with pytest.raises(InvalidIntent):
        submit_contribution(group_id=group.id, user_id=member.id, amount=40_000, rail="mobile_money",
                            rail_details=MOBILE, idempotency_key="PC300")


def test_invalid_contribution_leaves_no_rows(member, group, gateway):
    with pytest.raises(UnsupportedOperator):
        submit_contribution(group_id=group.id, user_id=member.id, amount=50_000, rail="mobile_money",
                            rail_details={"phone_number": "0991234567", "provider": "zamtel"})
    assert Contribution.query.count() == 0
    assert gateway.calls == []


def test_instant_payout_uses_primary_account(member, payout, airtel_account, gateway):
    s = request_instant_payout(payout.id, user_id=member.id)

    assert s.intent.idempotency_key == f"payout:{payout.id}"
    assert s.dispatch_amount == 92_000
    assert gateway.calls[0].rail.payout_uuid == "e8d5fca0-e5ac-4714-a518-484be9011326"
    p = db.session.get(Payout, payout.id)
    assert p.status == "processing"
    assert p.settlement_id == s.id


def test_instant_payout_requires_an_account(member, payout):
    with pytest.raises(InvalidIntent):
        request_instant_payout(payout.id, user_id=member.id)


def test_only_recipient_requests_instant_payout(other_member, payout, airtel_account):
    with pytest.raises(NotAuthorized):
        request_instant_payout(payout.id, user_id=other_member.id)


def test_instant_and_manual_share_one_dispatch(member, admin, payout, airtel_account, gateway):
    a = request_instant_payout(payout.id, user_id=member.id)
    b = trigger_manual_payout(payout.id, admin_id=admin.id)
    assert a.id == b.id
    assert len(gateway.calls) == 1
    assert AuditLog.query.filter_by(action="manual_payout_triggered").count() == 1


def test_manual_payout_after_failure_goes_through_retry(member, admin, payout, airtel_account, gateway):
    gateway.queue(rejected("operator offline"))
    failed = request_instant_payout(payout.id, user_id=member.id)
    assert failed.status == "failed"
    assert db.session.get(Payout, payout.id).status == "failed"

    retry = trigger_manual_payout(payout.id, admin_id=admin.id)

    assert retry.retry_of_id == failed.id
    p = db.session.get(Payout, payout.id)
    assert p.settlement_id == retry.id
    assert p.status == "processing"


def test_manual_payout_is_admin_only(member, payout, airtel_account):
    with pytest.raises(NotAuthorized):
        trigger_manual_payout(payout.id, admin_id=member.id)


def test_shortfall_is_covered_once_from_reserve(member, admin, group, payout):
    db.session.add(Contribution(user_id=member.id, group_id=group.id, amount=70_000, rail="mobile_money",
                                status="completed"))
    db.session.add(Contribution(user_id=member.id, group_id=group.id, amount=30_000, rail="mobile_money",
                                status="failed"))
    db.session.commit()
    reserve.credit(50_000, reason="seed")
    assert payout_shortfall(payout) == 30_000

    p = cover_payout_shortfall(payout.id, admin_id=admin.id)
    assert p.reserve_covered_amount == 30_000
    assert reserve.current_balance() == 20_000

    cover_payout_shortfall(payout.id, admin_id=admin.id)
    assert reserve.current_balance() == 20_000


def test_shortfall_beyond_reserve_is_rejected(admin, payout):
    reserve.credit(10, reason="seed")
    with pytest.raises(InsufficientReserve):
        cover_payout_shortfall(payout.id, admin_id=admin.id)
    assert db.session.get(Payout, payout.id).reserve_covered_amount == 0
    assert reserve.current_balance() == 10


def test_register_account_normalizes_and_sets_primary(member):
    first = register_account(member.id, rail="mobile_money", provider="TNM", phone_number="+265 888 123 456")
    assert first.phone_number == "888123456"
    assert first.is_primary

    second = register_account(member.id, rail="bank_transfer", provider="NBS Bank Limited",
                              account_number="77", account_name="Chikondi Banda", is_primary=True)
    db.session.refresh(first)
    assert second.is_primary
    assert not first.is_primary


def test_register_account_validates_destination(member):
    with pytest.raises(UnsupportedOperator):
        register_account(member.id, rail="mobile_money", provider="mpesa", phone_number="0991234567")
    assert PaymentAccount.query.count() == 0
