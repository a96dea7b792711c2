from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Literal, Union

ExtraCategory = Literal["beverage", "excursion", "connectivity", "spa", "dining"]
CabinCategory = Literal["inside", "oceanview", "balcony", "suite"]

GROUP_MIN_CABINS = 3
# Largest group that still gets a self-serve discount; above this sales takes over.
GROUP_SELF_SERVE_MAX_CABINS = 15
WIZARD_MAX_CABINS = 10
PRICE_CHANGE_LOG_THRESHOLD = Decimal("0.05")

_ZERO = Decimal("0")

CABIN_CATEGORY_MULTIPLIERS: dict[CabinCategory, Decimal] = {
    "inside": Decimal("1.0"),
    "oceanview": Decimal("1.3"),
    "balcony": Decimal("1.8"),
    "suite": Decimal("3.0"),
}


class PricingError(ValueError):
    pass


class InvalidCabinCount(PricingError):
    pass


class InvalidPrice(PricingError):
    pass


class UnknownCabinCategory(PricingError):
    pass


@dataclass(frozen=True)
class Extra:
    id: str
    price: Decimal
    quantity: int = 1
    per_day: bool = False
    name: str = ""
    category: ExtraCategory | None = None


@dataclass(frozen=True)
class PricingRules:
    """
    Per-company group discount rates.

    Only the rates are configurable. Tier boundaries (3/6/11) and the
    16-cabin sales cutover are policy and stay fixed.
    """

    group_3_to_5: Decimal | None = None
    group_6_to_10: Decimal | None = None
    group_11_to_15: Decimal | None = None


@dataclass(frozen=True)
class DiscountRate:
    value: Decimal
    kind: Literal["rate"] = "rate"


@dataclass(frozen=True)
class ContactSalesRequired:
    num_cabins: int
    kind: Literal["contact_sales_required"] = "contact_sales_required"


GroupDiscount = Union[DiscountRate, ContactSalesRequired]


@dataclass(frozen=True)
class GroupBooking:
    num_cabins: int
    base_total: Decimal
    discount: GroupDiscount
    discount_amount: Decimal
    final_total: Decimal
    # Undiscounted price per cabin, in request order.
    cabin_prices: list[Decimal] = field(default_factory=list)

    @property
    def discount_percentage(self) -> Decimal:
        if isinstance(self.discount, DiscountRate):
            return self.discount.value
        return _ZERO

    @property
    def requires_sales_contact(self) -> bool:
        return isinstance(self.discount, ContactSalesRequired)


@dataclass(frozen=True)
class CancellationQuote:
    days_before: int
    fee_rate: Decimal
    fee_amount: Decimal
    refund_amount: Decimal


@dataclass(frozen=True)
class PriceLine:
    code: str
    description: str
    amount: Decimal


@dataclass(frozen=True)
class PriceRequest:
    base_price: Decimal
    num_cabins: int = 1
    extras: list[Extra] = field(default_factory=list)
    # None when no cruise is selected yet; per-day extras then charge one day.
    duration_days: int | None = None
    promo_code: str | None = None
    # Already validated amount; see promotions.validate_promo_code.
    promo_discount: Decimal = _ZERO
    departure_date: date | None = None
    cancellation_date: date | None = None


@dataclass(frozen=True)
class PriceBreakdown:
    cabin_total: Decimal
    extras_total: Decimal
    subtotal: Decimal
    group_discount: GroupDiscount
    group_discount_amount: Decimal
    promo_discount: Decimal
    final_total: Decimal
    lines: list[PriceLine]
    applied_rules: list[str]
    cancellation: CancellationQuote | None = None


@dataclass(frozen=True)
class PriceChange:
    old_price: Decimal
    new_price: Decimal
    change_reason: Literal["promotion", "group_discount", "manual"]
    applied_rules: list[str]


def to_money(value, field_name: str = "price") -> Decimal:
    if isinstance(value, bool):
        raise InvalidPrice(f"{field_name} must be a number")
    try:
        # str() first so floats keep their printed value (0.1 -> 0.1, not 0.1000000000000000055...)
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidPrice(f"{field_name} must be a number")
    if not amount.is_finite():
        raise InvalidPrice(f"{field_name} must be finite")
    if amount < 0:
        raise InvalidPrice(f"{field_name} must be >= 0")
    return amount


def _require_cabin_count(num_cabins) -> int:
    if isinstance(num_cabins, bool) or not isinstance(num_cabins, int):
        raise InvalidCabinCount("num_cabins must be an integer")
    if num_cabins < 1:
        raise InvalidCabinCount("num_cabins must be >= 1")
    return num_cabins


def _require_non_negative_int(value, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidPrice(f"{field_name} must be a non-negative integer")
    return value


def clamp_cabin_count(num_cabins: int) -> int:
    return max(1, min(WIZARD_MAX_CABINS, int(num_cabins)))


def cabin_total(base_price, num_cabins: int) -> Decimal:
    return to_money(base_price, "base_price") * _require_cabin_count(num_cabins)


def extra_cost(extra: Extra, duration_days: int | None) -> Decimal:
    """
    Price of one extra line.

    Per-day extras are multiplied by the cruise length. Without a known
    duration they are charged once per unit, like flat extras.
    """
    price = to_money(extra.price, f"extra[{extra.id}].price")
    qty = _require_non_negative_int(extra.quantity, f"extra[{extra.id}].quantity")
    cost = price * qty
    if extra.per_day and duration_days is not None:
        cost *= _require_non_negative_int(duration_days, "duration_days")
    return cost


def extras_total(extras: list[Extra], duration_days: int | None) -> Decimal:
    return sum((extra_cost(e, duration_days) for e in extras), _ZERO)


def compute_subtotal(base_price, num_cabins: int, extras: list[Extra], duration_days: int | None) -> Decimal:
    return cabin_total(base_price, num_cabins) + extras_total(extras, duration_days)


def apply_promo(subtotal, discount_amount) -> Decimal:
    sub = to_money(subtotal, "subtotal")
    disc = to_money(discount_amount, "discount_amount")
    return max(_ZERO, sub - disc)


def _tier_rates(rules: PricingRules | None) -> list[tuple[int, Decimal]]:
    # Highest tier first so the first match wins.
    r = rules or PricingRules()
    tiers = [
        (11, r.group_11_to_15, Decimal("0.15")),
        (6, r.group_6_to_10, Decimal("0.10")),
        (GROUP_MIN_CABINS, r.group_3_to_5, Decimal("0.05")),
    ]
    out: list[tuple[int, Decimal]] = []
    for lower, override, default in tiers:
        rate = default if override is None else to_money(override, "group discount rate")
        if rate > 1:
            raise InvalidPrice("group discount rate must be <= 1")
        if out and rate > out[-1][1]:
            raise InvalidPrice("group discount rates must not decrease as groups get larger")
        out.append((lower, rate))
    return out


def validate_pricing_rules(rules: PricingRules) -> PricingRules:
    """Raises InvalidPrice unless every rate is in [0, 1] and larger groups never get less."""
    _tier_rates(rules)
    return rules


def group_discount_rate(num_cabins: int, rules: PricingRules | None = None) -> GroupDiscount:
    n = _require_cabin_count(num_cabins)
    if n > GROUP_SELF_SERVE_MAX_CABINS:
        return ContactSalesRequired(num_cabins=n)
    for lower, rate in _tier_rates(rules):
        if n >= lower:
            return DiscountRate(value=rate)
    return DiscountRate(value=_ZERO)


def cabin_price(starting_price, category: str) -> Decimal:
    try:
        multiplier = CABIN_CATEGORY_MULTIPLIERS[category]
    except KeyError:
        raise UnknownCabinCategory(f"unknown cabin category: {category}")
    return to_money(starting_price, "base_price") * multiplier


def price_group_booking(
    base_price,
    num_cabins: int,
    rules: PricingRules | None = None,
    *,
    cabin_categories: list[str] | None = None,
) -> GroupBooking:
    """
    Group quote for one sailing.

    With cabin_categories, base_price is the starting (inside) fare and
    each cabin is priced by its category multiplier; the list length must
    match num_cabins.
    """
    n = _require_cabin_count(num_cabins)
    if cabin_categories is None:
        unit = to_money(base_price, "base_price")
        prices = [unit] * n
    else:
        if len(cabin_categories) != n:
            raise InvalidCabinCount("num_cabins must match the number of cabin categories")
        prices = [cabin_price(base_price, c) for c in cabin_categories]
    base_total = sum(prices, _ZERO)
    discount = group_discount_rate(n, rules)
    amount = base_total * discount.value if isinstance(discount, DiscountRate) else _ZERO
    return GroupBooking(
        num_cabins=n,
        base_total=base_total,
        discount=discount,
        discount_amount=amount,
        final_total=base_total - amount,
        cabin_prices=prices,
    )


def _as_datetime(d: date | datetime) -> datetime:
    if isinstance(d, datetime):
        return d
    return datetime(d.year, d.month, d.day)


def days_before_departure(departure: date | datetime, cancellation: date | datetime) -> int:
    delta = _as_datetime(departure) - _as_datetime(cancellation)
    return math.floor(delta.total_seconds() / 86_400)


def cancellation_fee_rate(departure: date | datetime, cancellation: date | datetime) -> Decimal:
    days = days_before_departure(departure, cancellation)
    if days >= 30:
        return _ZERO
    if days >= 14:
        return Decimal("0.25")
    if days >= 7:
        return Decimal("0.50")
    return Decimal("1.00")


def cancellation_quote(total, departure: date | datetime, cancellation: date | datetime) -> CancellationQuote:
    amount = to_money(total, "total")
    rate = cancellation_fee_rate(departure, cancellation)
    fee = amount * rate
    return CancellationQuote(
        days_before=days_before_departure(departure, cancellation),
        fee_rate=rate,
        fee_amount=fee,
        refund_amount=amount - fee,
    )


def price_booking(req: PriceRequest, rules: PricingRules | None = None) -> PriceBreakdown:
    cabins = cabin_total(req.base_price, req.num_cabins)
    lines: list[PriceLine] = [
        PriceLine(
            code="cabins",
            description=f"Cabin fare x{req.num_cabins}",
            amount=cabins,
        )
    ]

    extras_sum = _ZERO
    for e in req.extras:
        cost = extra_cost(e, req.duration_days)
        extras_sum += cost
        label = e.name or e.id
        per = f" x {req.duration_days} days" if e.per_day and req.duration_days is not None else ""
        lines.append(PriceLine(code=f"extra.{e.id}", description=f"{label} x{e.quantity}{per}", amount=cost))

    subtotal = cabins + extras_sum
    applied_rules: list[str] = []

    group = group_discount_rate(req.num_cabins, rules)
    group_amount = _ZERO
    if isinstance(group, DiscountRate) and group.value > 0:
        group_amount = cabins * group.value
        applied_rules.append(f"group_{req.num_cabins}cabins")
        lines.append(
            PriceLine(
                code="discount.group",
                description=f"Group discount ({(group.value * 100).normalize():f}%)",
                amount=-group_amount,
            )
        )

    after_group = subtotal - group_amount
    final_total = apply_promo(after_group, req.promo_discount)
    promo_applied = after_group - final_total
    if promo_applied > 0:
        code = (req.promo_code or "").strip().upper()
        applied_rules.append(f"promo_{code}" if code else "promo")
        lines.append(
            PriceLine(
                code="discount.promo",
                description=f"Promotion ({code})" if code else "Promotion",
                amount=-promo_applied,
            )
        )

    cancellation = None
    if req.departure_date is not None and req.cancellation_date is not None:
        cancellation = cancellation_quote(final_total, req.departure_date, req.cancellation_date)

    return PriceBreakdown(
        cabin_total=cabins,
        extras_total=extras_sum,
        subtotal=subtotal,
        group_discount=group,
        group_discount_amount=group_amount,
        promo_discount=promo_applied,
        final_total=final_total,
        lines=lines,
        applied_rules=applied_rules,
        cancellation=cancellation,
    )


def price_change(old_price, new_price, applied_rules: list[str]) -> PriceChange | None:
    """
    PriceHistory record for a quote whose final price moved materially.

    Returns None for changes under PRICE_CHANGE_LOG_THRESHOLD of the old
    price (and when there is no old price to compare against).
    """
    old = to_money(old_price, "old_price")
    new = to_money(new_price, "new_price")
    if old == 0:
        return None
    if abs(new - old) / old < PRICE_CHANGE_LOG_THRESHOLD:
        return None

    if any(r.startswith("promo") for r in applied_rules):
        reason = "promotion"
    elif any(r.startswith("group_") for r in applied_rules):
        reason = "group_discount"
    else:
        reason = "manual"
    return PriceChange(old_price=old, new_price=new, change_reason=reason, applied_rules=list(applied_rules))
