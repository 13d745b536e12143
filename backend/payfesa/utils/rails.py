"""Settlement rail resolution.

Provider and bank names arrive as free text from members and admins. They are
resolved once, here, into a closed set of rail shapes that carry the gateway
identifiers; nothing downstream looks at the raw strings again.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Union

from payfesa.errors import InvalidIntent, InvalidPhoneNumber, UnsupportedBank, UnsupportedOperator

COUNTRY_CODE = "265"
LOCAL_NUMBER_LENGTH = 9

# Paychangu mobile money operator ref ids (collections)
MOBILE_MONEY_OPERATORS = {
    "airtel": "20be6c20-adeb-4b5b-a7ba-0769820df4fb",
    "airtel money": "20be6c20-adeb-4b5b-a7ba-0769820df4fb",
    "tnm": "27494cb5-ba9e-437f-a114-4e7a7686bcca",
    "mpamba": "27494cb5-ba9e-437f-a114-4e7a7686bcca",
    "tnm mpamba": "27494cb5-ba9e-437f-a114-4e7a7686bcca",
}

# Paychangu disbursement uuids for mobile money wallets (payouts)
MOBILE_MONEY_PAYOUT_UUIDS = {
    "tnm": "5e9946ae-76ed-43f5-ad59-63e09096006a",
    "tnm mpamba": "5e9946ae-76ed-43f5-ad59-63e09096006a",
    "mpamba": "5e9946ae-76ed-43f5-ad59-63e09096006a",
    "airtel": "e8d5fca0-e5ac-4714-a518-484be9011326",
    "airtel money": "e8d5fca0-e5ac-4714-a518-484be9011326",
}

BANK_UUIDS = {
    "national bank of malawi": "82310dd1-ec9b-4fe7-a32c-2f262ef08681",
    "ecobank malawi limited": "87e62436-0553-4fb5-a76d-f27d28420c5b",
    "fdh bank limited": "b064172a-8a1b-4f7f-aad7-81b036c46c57",
    "standard bank limited": "e7447c2c-c147-4907-b194-e087fe8d8585",
    "centenary bank": "236760c9-3045-4a01-990e-497b28d115bb",
    "first capital limited": "968ac588-3b1f-4d89-81ff-a3d43a599003",
    "cdh investment bank": "c759d7b6-ae5c-4a95-814a-79171271897a",
    "nbs bank limited": "86007bf5-1b04-49ba-84c1-9758bbf5c996",
}


@dataclass(frozen=True)
class MobileMoneyRail:
    provider: str
    operator_ref_id: str
    payout_uuid: str
    phone_number: str
    account_name: str = ""

    rail = "mobile_money"


@dataclass(frozen=True)
class BankTransferRail:
    bank_name: str
    bank_uuid: str
    account_number: str
    account_name: str

    rail = "bank_transfer"


ResolvedRail = Union[MobileMoneyRail, BankTransferRail]


def _key(value) -> str:
    return re.sub(r"\s+", " ", str(value or "")).strip().lower()


def normalize_phone_number(phone: str) -> str:
    digits = re.sub(r"\D", "", str(phone or ""))
    if digits.startswith(COUNTRY_CODE):
        digits = digits[len(COUNTRY_CODE):]
    return digits[-LOCAL_NUMBER_LENGTH:]


def resolve_operator(provider: str) -> tuple[str, str]:
    key = _key(provider)
    operator_ref = MOBILE_MONEY_OPERATORS.get(key)
    payout_uuid = MOBILE_MONEY_PAYOUT_UUIDS.get(key)
    if not operator_ref or not payout_uuid:
        raise UnsupportedOperator(f"Unsupported mobile money operator: {provider or '(none)'}")
    return operator_ref, payout_uuid


def resolve_bank(bank_name: str) -> str:
    bank_uuid = BANK_UUIDS.get(_key(bank_name))
    if not bank_uuid:
        raise UnsupportedBank(f"Unsupported bank: {bank_name or '(none)'}")
    return bank_uuid


def resolve_rail(rail: str, details: dict | None) -> ResolvedRail:
    d = details or {}
    if rail == "mobile_money":
        phone_raw = (d.get("phone_number") or d.get("phone") or "").strip()
        provider = (d.get("provider") or "").strip()
        if not phone_raw or not provider:
            raise InvalidIntent("Mobile money requires a phone number and provider")
        operator_ref, payout_uuid = resolve_operator(provider)
        phone = normalize_phone_number(phone_raw)
        if not re.fullmatch(r"\d{%d}" % LOCAL_NUMBER_LENGTH, phone):
            raise InvalidPhoneNumber()
        return MobileMoneyRail(
            provider=_key(provider),
            operator_ref_id=operator_ref,
            payout_uuid=payout_uuid,
            phone_number=phone,
            account_name=(d.get("account_name") or "").strip(),
        )

    if rail == "bank_transfer":
        bank_name = (d.get("bank_name") or d.get("provider") or "").strip()
        account_number = (d.get("account_number") or "").strip()
        account_name = (d.get("account_name") or "").strip()
        if not bank_name or not account_number or not account_name:
            raise InvalidIntent("Bank transfer requires bank name, account number and account name")
        return BankTransferRail(
            bank_name=_key(bank_name),
            bank_uuid=resolve_bank(bank_name),
            account_number=account_number,
            account_name=account_name,
        )

    raise InvalidIntent(f"Unknown rail: {rail or '(none)'}")
