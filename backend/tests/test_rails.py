import pytest

from payfesa.errors import InvalidIntent, InvalidPhoneNumber, UnsupportedBank, UnsupportedOperator
from payfesa.utils.rails import (
    BANK_UUIDS,
    BankTransferRail,
    MobileMoneyRail,
    normalize_phone_number,
    resolve_rail,
)


@pytest.mark.parametrize("raw", ["+265991234567", "265 991 234 567", "0991234567", "991234567", "(099) 123-4567"])
def test_phone_numbers_normalize_to_nine_local_digits(raw):
    assert normalize_phone_number(raw) == "991234567"


def test_mobile_money_resolves_operator_case_insensitively():
    rail = resolve_rail("mobile_money", {"phone_number": "0881234567", "provider": "  TNM Mpamba "})
    assert isinstance(rail, MobileMoneyRail)
    assert rail.rail == "mobile_money"
    assert rail.phone_number == "881234567"
    assert rail.provider == "tnm mpamba"
    assert rail.operator_ref_id == "27494cb5-ba9e-437f-a114-4e7a7686bcca"
    assert rail.payout_uuid == "5e9946ae-76ed-43f5-ad59-63e09096006a"


def test_unknown_operator():
    with pytest.raises(UnsupportedOperator):
        resolve_rail("mobile_money", {"phone_number": "0991234567", "provider": "mpesa"})


def test_short_phone_number():
    with pytest.raises(InvalidPhoneNumber):
        resolve_rail("mobile_money", {"phone_number": "12345", "provider": "airtel"})


def test_mobile_money_requires_phone_and_provider():
    with pytest.raises(InvalidIntent):
        resolve_rail("mobile_money", {"provider": "airtel"})


def test_bank_transfer_resolves_bank_uuid():
    rail = resolve_rail("bank_transfer", {
        "bank_name": "Standard Bank Limited",
        "account_number": "9100000001",
        "account_name": "Mphatso Kumwenda",
    })
    assert isinstance(rail, BankTransferRail)
    assert rail.bank_uuid == BANK_UUIDS["standard bank limited"]
    assert rail.account_number == "9100000001"


def test_bank_transfer_accepts_provider_as_bank_name():
    rail = resolve_rail("bank_transfer", {
        "provider": "NBS Bank Limited",
        "account_number": "42",
        "account_name": "Group Treasurer",
    })
    assert rail.bank_uuid == BANK_UUIDS["nbs bank limited"]


def test_unknown_bank():
    with pytest.raises(UnsupportedBank):
        resolve_rail("bank_transfer", {"bank_name": "Bank of Nowhere", "account_number": "1", "account_name": "X"})


@pytest.mark.parametrize("missing", ["bank_name", "account_number", "account_name"])
def test_bank_transfer_requires_all_destination_fields(missing):
    details = {"bank_name": "FDH Bank Limited", "account_number": "123", "account_name": "Grace"}
    details.pop(missing)
    with pytest.raises(InvalidIntent):
        resolve_rail("bank_transfer", details)


def test_unknown_rail():
    with pytest.raises(InvalidIntent):
        resolve_rail("cheque", {})
