"""Paychangu gateway adapter.

One ``initiate`` contract over mobile money and bank transfer rails, for money
coming in (collections) and going out (payouts and refunds). Callers work in
integer minor units; amounts are formatted for the rail here. The adapter
never retries on its own.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

import requests
from flask import current_app

from payfesa.errors import GatewayNotConfigured
from payfesa.utils.rails import BankTransferRail, MobileMoneyRail, ResolvedRail

DEFAULT_ACCOUNT_NAME = "Payfesa User"

_COMPLETED = ("success", "successful", "completed")
_FAILED = ("failed", "failure", "declined")


@dataclass(frozen=True)
class GatewayRequest:
    direction: str  # collection | payout | refund
    rail: ResolvedRail
    amount: int
    charge_id: str


@dataclass
class GatewayResult:
    success: bool
    status: str = "failed"
    external_ref: str = ""
    trace_id: str = ""
    error: str = ""
    error_kind: str = ""  # GatewayRejected | GatewayTimeout
    payment_account_details: Optional[Dict[str, Any]] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def timed_out(self) -> bool:
        return self.error_kind == "GatewayTimeout"


def map_status(raw_status: str | None) -> str:
    """Map a rail status onto completed | failed | processing."""
    s = (raw_status or "").strip().lower()
    if s in _COMPLETED:
        return "completed"
    if s in _FAILED:
        return "failed"
    return "processing"


def format_amount(amount_minor: int, exponent: int = 2) -> str:
    if exponent <= 0:
        return str(int(amount_minor))
    return str(Decimal(int(amount_minor)).scaleb(-int(exponent)).quantize(Decimal(1).scaleb(-int(exponent))))


def verify_signature(secret: str, raw_body: bytes, signature_header: str | None) -> bool:
    if not secret or not signature_header:
        return False
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(digest, signature_header.strip().lower())


def _error_message(body: Any, status_code: int) -> str:
    msg = body.get("message") if isinstance(body, dict) else None
    if isinstance(msg, str) and msg.strip():
        return msg.strip()
    if msg:
        return str(msg)
    return f"HTTP {status_code}"


class PaychanguGateway:
    def __init__(self, secret_key: str, base_url: str = "https://api.paychangu.com", timeout: int = 20,
                 currency: str = "MWK", currency_exponent: int = 2):
        self.secret_key = (secret_key or "").strip()
        self.base_url = (base_url or "").rstrip("/")
        self.timeout = int(timeout)
        self.currency = currency
        self.currency_exponent = int(currency_exponent)

    @classmethod
    def from_config(cls, config) -> "PaychanguGateway":
        return cls(
            secret_key=config.get("PAYCHANGU_SECRET_KEY", ""),
            base_url=config.get("PAYCHANGU_BASE_URL", "https://api.paychangu.com"),
            timeout=config.get("PAYCHANGU_TIMEOUT_SECONDS", 20),
            currency=config.get("SETTLEMENT_CURRENCY", "MWK"),
            currency_exponent=config.get("CURRENCY_EXPONENT", 2),
        )

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def build_payload(self, req: GatewayRequest) -> tuple[str, dict]:
        amount = format_amount(req.amount, self.currency_exponent)
        rail = req.rail

        if req.direction == "collection":
            if isinstance(rail, MobileMoneyRail):
                return f"{self.base_url}/mobile-money/payments/initialize", {
                    "mobile": rail.phone_number,
                    "mobile_money_operator_ref_id": rail.operator_ref_id,
                    "amount": amount,
                    "charge_id": req.charge_id,
                }
            # Virtual account: the gateway answers with account details for the payer.
            return f"{self.base_url}/direct-charge/payments/initialize", {
                "payment_method": "mobile_bank_transfer",
                "amount": amount,
                "currency": self.currency,
                "charge_id": req.charge_id,
                "create_permanent_account": "false",
            }

        if isinstance(rail, MobileMoneyRail):
            bank_uuid = rail.payout_uuid
            account_number = rail.phone_number
        elif isinstance(rail, BankTransferRail):
            bank_uuid = rail.bank_uuid
            account_number = rail.account_number
        else:
            raise TypeError(f"unsupported rail {rail!r}")
        return f"{self.base_url}/direct-charge/payouts/initialize", {
            "amount": amount,
            "currency": self.currency,
            "charge_id": req.charge_id,
            "bank_uuid": bank_uuid,
            "account_number": account_number,
            "account_name": rail.account_name or DEFAULT_ACCOUNT_NAME,
        }

    def _post(self, url: str, payload: dict) -> tuple[Optional[GatewayResult], Any, int]:
        try:
            r = requests.post(url, headers=self._headers(), json=payload, timeout=self.timeout)
        except requests.exceptions.ConnectTimeout as e:
            # Never reached the gateway.
            return GatewayResult(success=False, error=f"Could not reach payment gateway: {e}",
                                 error_kind="GatewayRejected"), None, 0
        except requests.exceptions.Timeout:
            return GatewayResult(success=False, status="processing", error="Payment gateway did not respond in time",
                                 error_kind="GatewayTimeout"), None, 0
        except requests.exceptions.RequestException as e:
            return GatewayResult(success=False, error=str(e), error_kind="GatewayRejected"), None, 0

        try:
            body = r.json() if r.content else {}
        except ValueError:
            body = {}
        return None, body, r.status_code

    def initiate(self, req: GatewayRequest) -> GatewayResult:
        if not self.configured:
            raise GatewayNotConfigured()
        url, payload = self.build_payload(req)
        current_app.logger.info("paychangu initiate %s %s charge_id=%s", req.direction, req.rail.rail, req.charge_id)

        failed, body, status_code = self._post(url, payload)
        if failed is not None:
            current_app.logger.warning("paychangu initiate charge_id=%s: %s", req.charge_id, failed.error)
            return failed

        if not (200 <= status_code < 300) or (body or {}).get("status") != "success":
            error = _error_message(body, status_code)
            current_app.logger.warning("paychangu rejected charge_id=%s: %s", req.charge_id, error)
            return GatewayResult(success=False, error=error, error_kind="GatewayRejected", raw=body or {})

        data = body.get("data") or {}
        txn = data.get("transaction") or {}
        return GatewayResult(
            success=True,
            status=map_status(txn.get("status") or "pending"),
            external_ref=str(txn.get("ref_id") or ""),
            trace_id=str(txn.get("trace_id") or ""),
            payment_account_details=data.get("payment_account_details"),
            raw=body,
        )

    def verify(self, charge_id: str) -> GatewayResult:
        """Ask the gateway for the current state of a charge."""
        if not self.configured:
            raise GatewayNotConfigured()
        failed, body, status_code = self._post(f"{self.base_url}/verify-payment", {"tx_ref": charge_id})
        if failed is not None:
            return failed
        if not (200 <= status_code < 300):
            return GatewayResult(success=False, error=_error_message(body, status_code), error_kind="GatewayRejected",
                                 raw=body or {})

        data = (body or {}).get("data") or {}
        return GatewayResult(
            success=True,
            status=map_status(data.get("status")),
            external_ref=str(data.get("ref_id") or data.get("tx_ref") or ""),
            trace_id=str(data.get("trace_id") or ""),
            error=str(data.get("failure_reason") or ""),
            raw=body or {},
        )


def get_gateway():
    """Gateway for the current app; tests and workers may install their own on app.extensions."""
    gw = current_app.extensions.get("payment_gateway")
    if gw is not None:
        return gw
    gw = PaychanguGateway.from_config(current_app.config)
    if not gw.configured:
        raise GatewayNotConfigured()
    return gw
