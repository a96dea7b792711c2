from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Literal

from .domain import to_money

PromotionType = Literal["percentage", "fixed"]


@dataclass(frozen=True)
class PromotionCode:
    code: str
    type: PromotionType
    value: Decimal
    valid_from: datetime
    valid_until: datetime
    is_active: bool = True
    max_uses: int | None = None
    current_uses: int = 0
    min_order_amount: Decimal | None = None
    # None means "applies to all".
    applicable_cruises: list[str] | None = None
    applicable_categories: list[str] | None = None


@dataclass(frozen=True)
class PromotionValidation:
    is_valid: bool
    code: str | None = None
    discount_amount: Decimal | None = None
    message: str | None = None


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def _invalid(message: str) -> PromotionValidation:
    return PromotionValidation(is_valid=False, message=message)


def validate_promo_code(
    promo: PromotionCode | None,
    *,
    cruise_id: str | None,
    cabin_category: str | None,
    order_amount,
    now: datetime,
) -> PromotionValidation:
    """
    Check a looked-up promotion against an order and compute its discount.

    `promo` is whatever the caller found for the entered code (None when the
    code is unknown). Checks run in a fixed order and the first failure wins,
    so the shopper always sees the same message for the same code.
    """
    if promo is None:
        return _invalid("Invalid promotion code")

    if now < promo.valid_from or now > promo.valid_until:
        return _invalid("Promotion code has expired")

    if not promo.is_active:
        return _invalid("Promotion code is not active")

    if promo.max_uses and promo.current_uses >= promo.max_uses:
        return _invalid("Promotion code usage limit reached")

    amount = to_money(order_amount, "order_amount")
    if promo.min_order_amount and amount < promo.min_order_amount:
        return _invalid(f"Minimum order amount of ${promo.min_order_amount} required")

    if promo.applicable_cruises is not None and cruise_id not in promo.applicable_cruises:
        return _invalid("Promotion not applicable to this cruise")

    if promo.applicable_categories is not None and cabin_category not in promo.applicable_categories:
        return _invalid("Promotion not applicable to this cabin category")

    value = to_money(promo.value, "promotion value")
    if promo.type == "percentage":
        discount = amount * value / 100
    else:
        discount = value

    return PromotionValidation(is_valid=True, code=normalize_code(promo.code), discount_amount=discount)


def redeem(promo: PromotionCode) -> PromotionCode:
    return replace(promo, current_uses=promo.current_uses + 1)
