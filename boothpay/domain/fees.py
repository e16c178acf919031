"""
Payment channel fee pass-through.

When pass-through is enabled the buyer carries the gateway fee: the charged
gross is chosen so that, after the gateway deducts its fee for the channel,
the merchant still nets the booking amount:

    gross = ceil((net + flat_eff) / (1 - pct_eff))

where pct_eff/flat_eff include VAT (PPN) unless the channel's published rate
already includes it.
"""

from dataclasses import dataclass, field
from decimal import ROUND_CEILING, Decimal
from typing import Any, Iterable, Mapping

ALL_CHANNEL_CODES = (
    "qris",
    "gopay",
    "shopeepay",
    "dana",
    "bank_transfer",
    "credit_card",
    "alfamart",
    "indomaret",
)

CHANNEL_LABELS = {
    "va": "Virtual Account",
    "qris": "QRIS",
    "gopay": "GoPay",
    "shopeepay": "ShopeePay",
    "dana": "DANA",
    "card": "Credit/Debit Card",
    "minimarket_alfa": "Alfamart / Alfamidi / DAN+DAN",
    "minimarket_indomaret": "Indomaret",
    "akulaku": "Akulaku",
    "kredivo": "Kredivo",
}

_VA_CODES = {
    "bank_transfer",
    "permata_va",
    "bca_va",
    "bni_va",
    "bri_va",
    "cimb_va",
    "other_va",
    "echannel",
}


@dataclass(frozen=True)
class FeeRate:
    pct: float = 0.0
    flat: float = 0.0
    include_ppn: bool = False


@dataclass(frozen=True)
class FeeSchedule:
    ppn_rate: float = 0.11
    include_ppn_channels: frozenset[str] = frozenset()
    rates: Mapping[str, FeeRate] = field(default_factory=dict)


@dataclass(frozen=True)
class GrossUp:
    gross: int
    fee: int


@dataclass(frozen=True)
class FeeQuote:
    """What a charge should ask the gateway for."""

    amount: int
    items: list[dict]
    mode: str  # "off" | "single" | "worst_case"
    channel: str | None


def channel_label(channel: str | None) -> str | None:
    if channel is None:
        return None
    return CHANNEL_LABELS.get(channel, channel)


def normalize_enabled_payments(raw: str | Iterable[str] | None) -> list[str] | None:
    """None means every channel the gateway has enabled."""
    if raw is None:
        return None
    if isinstance(raw, str):
        values = [part.strip().lower() for part in raw.split(",")]
    else:
        values = [str(part).strip().lower() for part in raw]
    values = [value for value in values if value]
    if not values or values == ["all"]:
        return None
    return values


def map_enabled_to_channel(code: str | None) -> str | None:
    c = str(code or "").lower()
    if not c:
        return None
    if c in _VA_CODES:
        return "va"
    if c in {"qris", "other_qris"}:
        return "qris"
    if c in {"gopay", "shopeepay", "dana", "kredivo"}:
        return c
    if c in {"credit_card", "card"}:
        return "card"
    if c in {"alfamart", "cstore"}:
        return "minimarket_alfa"
    if c == "indomaret":
        return "minimarket_indomaret"
    if c in {"akulaku", "akucicil"}:
        return "akulaku"
    return None


def detect_channel(snapshot: Mapping[str, Any] | None) -> str | None:
    """Fee channel from a gateway status snapshot or notification body."""
    if not snapshot:
        return None
    payment_type = str(snapshot.get("payment_type") or "").lower()
    if payment_type in {"bank_transfer", "echannel"}:
        return "va"
    if payment_type == "credit_card":
        return "card"
    if payment_type == "cstore":
        store = str(snapshot.get("store") or "").lower()
        if "indomaret" in store:
            return "minimarket_indomaret"
        return "minimarket_alfa"
    if payment_type == "akucicil":
        return "akulaku"
    if payment_type in {"qris", "gopay", "shopeepay", "dana", "akulaku", "kredivo"}:
        return payment_type
    return None


def gross_up(net_target: int, channel: str | None, schedule: FeeSchedule) -> GrossUp:
    base = int(net_target or 0)
    if base <= 0:
        return GrossUp(gross=0, fee=0)

    rate = schedule.rates.get(channel or "", FeeRate())
    include = rate.include_ppn or (channel in schedule.include_ppn_channels)
    ppn = Decimal(str(schedule.ppn_rate))
    pct = Decimal(str(rate.pct))
    flat = Decimal(str(rate.flat))

    pct_eff = pct if include else pct * (1 + ppn)
    flat_eff = flat if include else (flat * (1 + ppn)).to_integral_value(ROUND_CEILING)

    denominator = 1 - pct_eff
    if denominator <= 0:
        gross = Decimal(base) + flat_eff
    else:
        gross = (Decimal(base) + flat_eff) / denominator
    gross_int = int(gross.to_integral_value(ROUND_CEILING))
    return GrossUp(gross=gross_int, fee=gross_int - base)


def with_fee_item(items: list[dict], base: int, channel: str, schedule: FeeSchedule) -> tuple[list[dict], int]:
    result = gross_up(base, channel, schedule)
    out = list(items)
    if result.fee > 0:
        out.append(
            {
                "id": "pg_fee",
                "name": f"Channel fee ({channel_label(channel)})",
                "price": result.fee,
                "quantity": 1,
                "category": "pg_fee",
            }
        )
    return out, result.gross


def quote_charge(
    base_amount: int,
    items: list[dict],
    enabled_payments: list[str] | None,
    schedule: FeeSchedule,
    passthrough: bool,
) -> FeeQuote:
    """
    Decide the gross to charge.

    One enabled channel: gross-up for it. Several (or all): gross-up for the
    most expensive candidate, since the buyer picks the channel only on the
    gateway's page. Raises ValueError for a single unknown channel code.
    """
    if not passthrough:
        return FeeQuote(amount=base_amount, items=list(items), mode="off", channel=None)

    if enabled_payments is not None and len(enabled_payments) == 1:
        channel = map_enabled_to_channel(enabled_payments[0])
        if channel is None:
            raise ValueError(f"Unknown payment channel: {enabled_payments[0]}")
        quoted_items, gross = with_fee_item(items, base_amount, channel, schedule)
        return FeeQuote(amount=gross, items=quoted_items, mode="single", channel=channel)

    candidates = ALL_CHANNEL_CODES if enabled_payments is None else enabled_payments
    best = FeeQuote(amount=base_amount, items=list(items), mode="worst_case", channel=None)
    for code in candidates:
        channel = map_enabled_to_channel(code)
        if channel is None:
            continue
        quoted_items, gross = with_fee_item(items, base_amount, channel, schedule)
        if gross > best.amount:
            best = FeeQuote(amount=gross, items=quoted_items, mode="worst_case", channel=channel)
    return best


def expected_settlement_amount(
    booking_amount: int,
    schedule: FeeSchedule,
    passthrough: bool,
    quoted_channel: str | None = None,
    charge_quoted: bool = False,
    detected_channel: str | None = None,
) -> int:
    """
    Gross the gateway should report for a booking.

    A charge-time quote wins: the gateway settles the amount it was asked for,
    whichever channel the buyer ended up using. Without one, fall back to the
    channel detected in the gateway snapshot.
    """
    if not passthrough:
        return int(booking_amount)
    if charge_quoted:
        if quoted_channel is None:
            return int(booking_amount)
        return gross_up(booking_amount, quoted_channel, schedule).gross
    if detected_channel is not None:
        return gross_up(booking_amount, detected_channel, schedule).gross
    return int(booking_amount)
