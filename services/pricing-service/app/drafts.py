from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timedelta
from decimal import Decimal

from . import domain

FIRST_STEP = 1
LAST_STEP = 4  # cruise -> cabin -> extras -> passengers/payment
DEFAULT_TTL = timedelta(hours=24)


@dataclass(frozen=True)
class BookingDraft:
    """
    In-progress booking held between wizard steps.

    Drafts are values: every operation below returns a new draft and stamps
    `last_updated` with the `now` it was given. Totals are never stored,
    they are recomputed from the draft with `draft_totals`.
    """

    draft_id: str
    last_updated: datetime
    company_id: str = ""
    cruise_id: str | None = None
    cruise_name: str | None = None
    departure_date: date | None = None
    duration_days: int | None = None
    cabin_category: str | None = None
    cabin_number: str | None = None
    base_price: Decimal = Decimal("0")
    num_cabins: int = 1
    extras: list[domain.Extra] = field(default_factory=list)
    promo_code: str | None = None
    promo_discount: Decimal = Decimal("0")
    current_step: int = FIRST_STEP


def select_cruise(
    draft: BookingDraft,
    *,
    cruise_id: str,
    cruise_name: str | None,
    departure_date: date | None,
    duration_days: int | None,
    starting_price,
    now: datetime,
) -> BookingDraft:
    return replace(
        draft,
        cruise_id=cruise_id,
        cruise_name=cruise_name,
        departure_date=departure_date,
        duration_days=None if duration_days is None else int(duration_days),
        base_price=domain.to_money(starting_price, "starting_price"),
        last_updated=now,
    )


def select_cabin(draft: BookingDraft, *, category: str, price, cabin_number: str | None = None, now: datetime) -> BookingDraft:
    return replace(
        draft,
        cabin_category=category,
        cabin_number=cabin_number,
        base_price=domain.to_money(price, "cabin price"),
        last_updated=now,
    )


def clear_cruise(draft: BookingDraft, *, now: datetime) -> BookingDraft:
    return replace(
        draft,
        cruise_id=None,
        cruise_name=None,
        departure_date=None,
        duration_days=None,
        base_price=Decimal("0"),
        last_updated=now,
    )


def clear_cabin(draft: BookingDraft, *, now: datetime) -> BookingDraft:
    # The fare stays; it is replaced by the next select_cabin or select_cruise.
    return replace(draft, cabin_category=None, cabin_number=None, last_updated=now)


def set_cabin_number(draft: BookingDraft, cabin_number: str | None, *, now: datetime) -> BookingDraft:
    return replace(draft, cabin_number=cabin_number or None, last_updated=now)


def clear_extras(draft: BookingDraft, *, now: datetime) -> BookingDraft:
    return replace(draft, extras=[], last_updated=now)


def reset(draft: BookingDraft, *, now: datetime) -> BookingDraft:
    return BookingDraft(draft_id=draft.draft_id, company_id=draft.company_id, last_updated=now)


def set_num_cabins(draft: BookingDraft, num_cabins: int, *, now: datetime) -> BookingDraft:
    return replace(draft, num_cabins=domain.clamp_cabin_count(num_cabins), last_updated=now)


def add_extra(draft: BookingDraft, extra: domain.Extra, *, now: datetime) -> BookingDraft:
    extras = list(draft.extras)
    for i, e in enumerate(extras):
        if e.id == extra.id:
            extras[i] = replace(e, quantity=e.quantity + extra.quantity)
            break
    else:
        extras.append(extra)
    return replace(draft, extras=extras, last_updated=now)


def remove_extra(draft: BookingDraft, extra_id: str, *, now: datetime) -> BookingDraft:
    return replace(draft, extras=[e for e in draft.extras if e.id != extra_id], last_updated=now)


def update_extra_quantity(draft: BookingDraft, extra_id: str, quantity: int, *, now: datetime) -> BookingDraft:
    if quantity < 0:
        raise domain.InvalidPrice("quantity must be >= 0")
    extras = [replace(e, quantity=quantity) if e.id == extra_id else e for e in draft.extras]
    return replace(draft, extras=extras, last_updated=now)


def set_promo(draft: BookingDraft, code: str | None, discount, *, now: datetime) -> BookingDraft:
    return replace(
        draft,
        promo_code=(code or "").strip().upper() or None,
        promo_discount=domain.to_money(discount, "promo_discount"),
        last_updated=now,
    )


def go_to_step(draft: BookingDraft, step: int, *, now: datetime) -> BookingDraft:
    if step < FIRST_STEP or step > LAST_STEP:
        return draft
    return replace(draft, current_step=step, last_updated=now)


def next_step(draft: BookingDraft, *, now: datetime) -> BookingDraft:
    return go_to_step(draft, draft.current_step + 1, now=now)


def previous_step(draft: BookingDraft, *, now: datetime) -> BookingDraft:
    return go_to_step(draft, draft.current_step - 1, now=now)


def draft_totals(draft: BookingDraft, rules: domain.PricingRules | None = None) -> domain.PriceBreakdown:
    return domain.price_booking(
        domain.PriceRequest(
            base_price=draft.base_price,
            num_cabins=draft.num_cabins,
            extras=list(draft.extras),
            duration_days=draft.duration_days,
            promo_code=draft.promo_code,
            promo_discount=draft.promo_discount,
        ),
        rules=rules,
    )


def is_expired(draft: BookingDraft, now: datetime, ttl: timedelta = DEFAULT_TTL) -> bool:
    return now - draft.last_updated >= ttl


def to_dict(draft: BookingDraft) -> dict:
    out = asdict(draft)
    out["last_updated"] = draft.last_updated.isoformat()
    out["departure_date"] = draft.departure_date.isoformat() if draft.departure_date else None
    out["base_price"] = str(draft.base_price)
    out["promo_discount"] = str(draft.promo_discount)
    out["extras"] = [{**asdict(e), "price": str(e.price)} for e in draft.extras]
    return out


def from_dict(raw: dict) -> BookingDraft:
    return BookingDraft(
        draft_id=raw["draft_id"],
        last_updated=datetime.fromisoformat(raw["last_updated"]),
        company_id=raw.get("company_id") or "",
        cruise_id=raw.get("cruise_id"),
        cruise_name=raw.get("cruise_name"),
        departure_date=date.fromisoformat(raw["departure_date"]) if raw.get("departure_date") else None,
        duration_days=raw.get("duration_days"),
        cabin_category=raw.get("cabin_category"),
        cabin_number=raw.get("cabin_number"),
        base_price=Decimal(str(raw.get("base_price") or "0")),
        num_cabins=int(raw.get("num_cabins") or 1),
        extras=[
            domain.Extra(
                id=e["id"],
                price=Decimal(str(e["price"])),
                quantity=int(e.get("quantity", 1)),
                per_day=bool(e.get("per_day", False)),
                name=e.get("name") or "",
                category=e.get("category"),
            )
            for e in raw.get("extras") or []
        ],
        promo_code=raw.get("promo_code"),
        promo_discount=Decimal(str(raw.get("promo_discount") or "0")),
        current_step=int(raw.get("current_step") or FIRST_STEP),
    )
