"""Payout fee structure.

Rates are held in basis points so every computation stays in integers:
1% goes to the reserve wallet, 7% covers platform, service and telecom costs.

Each fee is rounded half-up independently; the net amount absorbs the
remainder, so ``net_amount + total_fees == gross_amount`` always holds.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass

from payfesa.errors import InvalidAmount

BPS_DENOMINATOR = 10_000

FEE_RATES_BPS = {
    "reserve": 100,   # 1% - payout safety, credited to the reserve wallet
    "platform": 700,  # 7% - service, processing and telecom fees
}

TOTAL_FEE_BPS = sum(FEE_RATES_BPS.values())


@dataclass(frozen=True)
class FeeBreakdown:
    gross_amount: int
    reserve_fee: int
    platform_fee: int
    total_fees: int
    net_amount: int

    def to_dict(self) -> dict:
        return asdict(self)


def _round_half_up_ratio(numerator: int, denominator: int) -> int:
    return (2 * numerator + denominator) // (2 * denominator)


def _fee(amount: int, bps: int) -> int:
    return _round_half_up_ratio(amount * bps, BPS_DENOMINATOR)


def _require_positive_int(value, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmount(f"{label} must be a whole number of minor units")
    if value <= 0:
        raise InvalidAmount(f"{label} must be greater than zero")
    return value


def compute_fees_from_gross(gross: int) -> FeeBreakdown:
    gross = _require_positive_int(gross, "Gross amount")
    reserve_fee = _fee(gross, FEE_RATES_BPS["reserve"])
    platform_fee = _fee(gross, FEE_RATES_BPS["platform"])
    total = reserve_fee + platform_fee
    net = gross - total
    if net < 0:
        raise InvalidAmount("Amount is too small to cover fees")
    return FeeBreakdown(
        gross_amount=gross,
        reserve_fee=reserve_fee,
        platform_fee=platform_fee,
        total_fees=total,
        net_amount=net,
    )


def compute_gross_from_net(net: int) -> FeeBreakdown:
    """Gross needed for a member to receive ``net``; re-derived through the forward path."""
    net = _require_positive_int(net, "Net amount")
    gross = _round_half_up_ratio(net * BPS_DENOMINATOR, BPS_DENOMINATOR - TOTAL_FEE_BPS)
    return compute_fees_from_gross(gross)


def no_fees(gross: int) -> FeeBreakdown:
    gross = _require_positive_int(gross, "Amount")
    return FeeBreakdown(gross_amount=gross, reserve_fee=0, platform_fee=0, total_fees=0, net_amount=gross)


def total_fee_percentage() -> float:
    return TOTAL_FEE_BPS / 100
