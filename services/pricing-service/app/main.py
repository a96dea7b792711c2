from __future__ import annotations

import logging
import os
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated, Literal
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

from . import domain, drafts, events, persistence, promotions
from .security import get_principal_optional, issue_token, require_roles

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Pricing Service",
    version="0.2.0",
    description="Cabin and extras pricing, group discounts, promotion codes, cancellation fees and booking drafts.",
)

PERSIST_STATE = os.getenv("PERSIST_STATE", "").strip().lower() in {"1", "true", "yes", "on"}
DRAFT_TTL = timedelta(hours=float(os.getenv("DRAFT_TTL_HOURS", "24")))

_PROMOTIONS_BY_COMPANY: dict[str, dict[str, promotions.PromotionCode]] = {}  # company_id -> code -> promotion
_RULES_BY_COMPANY: dict[str, domain.PricingRules] = {}  # company_id -> group discount overrides
_DRAFTS: dict[str, drafts.BookingDraft] = {}  # draft_id -> draft

if PERSIST_STATE:
    _PROMOTIONS_BY_COMPANY, _RULES_BY_COMPANY, _DRAFTS = persistence.load_data()

_CENT = Decimal("0.01")
SALES_CONTACT_MESSAGE = "Groups of 16 or more cabins require contact with our sales team"


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _utc(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def _company_key(x_company_id: str | None) -> str:
    return (x_company_id or "").strip()


def _ensure_company_key(x_company_id: str | None) -> str:
    key = _company_key(x_company_id)
    if not key or key == "*":
        raise HTTPException(status_code=400, detail="Company-managed pricing requires X-Company-Id. Global data is not supported.")
    return key


def _money(x: Decimal) -> Decimal:
    # Presentation rounding only; the engine keeps full precision.
    return x.quantize(_CENT, rounding=ROUND_HALF_UP)


def _persist() -> None:
    _prune_expired_drafts(_now())
    if PERSIST_STATE:
        persistence.save_data(_PROMOTIONS_BY_COMPANY, _RULES_BY_COMPANY, _DRAFTS)


def _prune_expired_drafts(now: datetime) -> None:
    expired = [draft_id for draft_id, d in _DRAFTS.items() if drafts.is_expired(d, now, ttl=DRAFT_TTL)]
    for draft_id in expired:
        del _DRAFTS[draft_id]
    if expired:
        logger.info("Pruned %d expired drafts", len(expired))


def _check_promo(
    company_id: str,
    code: str | None,
    *,
    cruise_id: str | None,
    cabin_category: str | None,
    order_amount: Decimal,
) -> promotions.PromotionValidation | None:
    code_n = promotions.normalize_code(code)
    if not code_n:
        return None
    promo = (_PROMOTIONS_BY_COMPANY.get(company_id) or {}).get(code_n)
    v = promotions.validate_promo_code(
        promo,
        cruise_id=cruise_id,
        cabin_category=cabin_category,
        order_amount=order_amount,
        now=_now(),
    )
    if not v.is_valid:
        logger.info("Rejected promo code %s for company %s: %s", code_n, company_id or "-", v.message)
    return v


def _resolve_promo(
    company_id: str,
    code: str | None,
    *,
    cruise_id: str | None,
    cabin_category: str | None,
    order_amount: Decimal,
) -> Decimal:
    v = _check_promo(company_id, code, cruise_id=cruise_id, cabin_category=cabin_category, order_amount=order_amount)
    if v is None:
        return Decimal("0")
    if not v.is_valid:
        raise HTTPException(status_code=400, detail=v.message)
    return v.discount_amount or Decimal("0")


class ExtraIn(BaseModel):
    id: str = Field(min_length=1)
    name: str = ""
    price: Decimal = Field(ge=0)
    quantity: int = Field(default=1, ge=0)
    per_day: bool = False
    category: domain.ExtraCategory | None = None

    def to_domain(self) -> domain.Extra:
        return domain.Extra(
            id=self.id,
            name=self.name,
            price=self.price,
            quantity=self.quantity,
            per_day=self.per_day,
            category=self.category,
        )


class ExtraOut(BaseModel):
    id: str
    name: str
    price: Decimal
    quantity: int
    per_day: bool
    category: str | None = None


class QuoteRequestIn(BaseModel):
    cruise_id: str | None = None
    cabin_category: str | None = None
    base_price: Decimal = Field(ge=0, description="Unit cabin price")
    num_cabins: int = Field(default=1, ge=1)
    extras: list[ExtraIn] = Field(default_factory=list)
    duration_days: int | None = Field(default=None, ge=0, description="Cruise length; per-day extras are charged once when omitted")
    promo_code: str | None = None
    promo_discount: Decimal | None = Field(default=None, ge=0, description="Already validated promo amount. If omitted, promo_code is validated here.")
    departure_date: date | None = None
    cancellation_date: date | None = None


class PriceLineOut(BaseModel):
    code: str
    description: str
    amount: Decimal


class GroupDiscountOut(BaseModel):
    kind: Literal["rate", "contact_sales_required"]
    value: Decimal | None = None
    message: str | None = None


class CancellationOut(BaseModel):
    days_before: int
    fee_rate: Decimal
    fee_amount: Decimal
    refund_amount: Decimal


class QuoteOut(BaseModel):
    cabin_total: Decimal
    extras_total: Decimal
    subtotal: Decimal
    group_discount: GroupDiscountOut
    group_discount_amount: Decimal
    promo_discount: Decimal
    final_total: Decimal
    lines: list[PriceLineOut]
    applied_rules: list[str]
    cancellation: CancellationOut | None = None


def _group_discount_out(g: domain.GroupDiscount) -> GroupDiscountOut:
    if isinstance(g, domain.ContactSalesRequired):
        return GroupDiscountOut(kind="contact_sales_required", message=SALES_CONTACT_MESSAGE)
    return GroupDiscountOut(kind="rate", value=g.value)


def _cancellation_out(c: domain.CancellationQuote) -> CancellationOut:
    return CancellationOut(
        days_before=c.days_before,
        fee_rate=c.fee_rate,
        fee_amount=_money(c.fee_amount),
        refund_amount=_money(c.refund_amount),
    )


def _quote_out(b: domain.PriceBreakdown) -> QuoteOut:
    return QuoteOut(
        cabin_total=_money(b.cabin_total),
        extras_total=_money(b.extras_total),
        subtotal=_money(b.subtotal),
        group_discount=_group_discount_out(b.group_discount),
        group_discount_amount=_money(b.group_discount_amount),
        promo_discount=_money(b.promo_discount),
        final_total=_money(b.final_total),
        lines=[PriceLineOut(code=l.code, description=l.description, amount=_money(l.amount)) for l in b.lines],
        applied_rules=list(b.applied_rules),
        cancellation=_cancellation_out(b.cancellation) if b.cancellation else None,
    )


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/quote", response_model=QuoteOut)
async def create_quote(
    payload: QuoteRequestIn,
    x_company_id: Annotated[str | None, Header()] = None,
    _principal=Depends(get_principal_optional),
):
    company_id = _company_key(x_company_id)
    try:
        extras = [e.to_domain() for e in payload.extras]
        promo_discount = payload.promo_discount
        if promo_discount is None:
            promo_discount = _resolve_promo(
                company_id,
                payload.promo_code,
                cruise_id=payload.cruise_id,
                cabin_category=payload.cabin_category,
                order_amount=domain.compute_subtotal(payload.base_price, payload.num_cabins, extras, payload.duration_days),
            )
        req = domain.PriceRequest(
            base_price=payload.base_price,
            num_cabins=payload.num_cabins,
            extras=extras,
            duration_days=payload.duration_days,
            promo_code=payload.promo_code,
            promo_discount=promo_discount,
            departure_date=payload.departure_date,
            cancellation_date=payload.cancellation_date,
        )
        breakdown = domain.price_booking(req, rules=_RULES_BY_COMPANY.get(company_id))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    # A caller-supplied promo amount was priced elsewhere; that caller owns the audit record.
    change = None
    if payload.promo_discount is None:
        change = domain.price_change(breakdown.subtotal, breakdown.final_total, breakdown.applied_rules)
    if change is not None:
        await events.publish_price_change(
            change,
            company_id=company_id,
            cruise_id=payload.cruise_id,
            cabin_category=payload.cabin_category,
        )
    return _quote_out(breakdown)


@app.get("/group-discount", response_model=GroupDiscountOut)
def get_group_discount(
    num_cabins: int,
    x_company_id: Annotated[str | None, Header()] = None,
):
    try:
        g = domain.group_discount_rate(num_cabins, _RULES_BY_COMPANY.get(_company_key(x_company_id)))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _group_discount_out(g)


class GroupBookingQuoteIn(BaseModel):
    base_price: Decimal = Field(ge=0, description="Starting (inside) fare when cabin_categories is given")
    num_cabins: int | None = Field(default=None, ge=1)
    cabin_categories: list[domain.CabinCategory] | None = Field(default=None, description="One category per cabin")


class GroupBookingOut(BaseModel):
    num_cabins: int
    cabin_prices: list[Decimal]
    base_total: Decimal
    discount_percentage: Decimal
    discount_amount: Decimal
    final_total: Decimal
    requires_sales_contact: bool
    message: str | None = None


@app.post("/group-bookings/quote", response_model=GroupBookingOut)
def quote_group_booking(
    payload: GroupBookingQuoteIn,
    x_company_id: Annotated[str | None, Header()] = None,
):
    num_cabins = payload.num_cabins
    if num_cabins is None:
        if payload.cabin_categories is None:
            raise HTTPException(status_code=400, detail="num_cabins or cabin_categories is required")
        num_cabins = len(payload.cabin_categories)
    if num_cabins < domain.GROUP_MIN_CABINS:
        raise HTTPException(status_code=400, detail=f"Minimum {domain.GROUP_MIN_CABINS} cabins required for group booking")
    try:
        g = domain.price_group_booking(
            payload.base_price,
            num_cabins,
            _RULES_BY_COMPANY.get(_company_key(x_company_id)),
            cabin_categories=payload.cabin_categories,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return GroupBookingOut(
        num_cabins=g.num_cabins,
        cabin_prices=[_money(p) for p in g.cabin_prices],
        base_total=_money(g.base_total),
        discount_percentage=g.discount_percentage,
        discount_amount=_money(g.discount_amount),
        final_total=_money(g.final_total),
        requires_sales_contact=g.requires_sales_contact,
        message=SALES_CONTACT_MESSAGE if g.requires_sales_contact else None,
    )


class CancellationIn(BaseModel):
    total: Decimal = Field(ge=0)
    departure_date: date
    cancellation_date: date | None = Field(default=None, description="Defaults to today (UTC)")


@app.post("/cancellation-fee", response_model=CancellationOut)
def quote_cancellation_fee(payload: CancellationIn):
    cancel_on = payload.cancellation_date or _now().date()
    try:
        c = domain.cancellation_quote(payload.total, payload.departure_date, cancel_on)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _cancellation_out(c)


class TokenRequest(BaseModel):
    sub: str = "dev-user"
    role: str = Field(default="guest", description="guest|agent|staff|admin")
    company_id: str | None = None


@app.post("/dev/token")
def dev_token(payload: TokenRequest):
    token = issue_token(sub=payload.sub, role=payload.role, company_id=payload.company_id)
    return {"access_token": token, "token_type": "bearer"}


class PromotionIn(BaseModel):
    code: str = Field(min_length=1)
    type: promotions.PromotionType
    value: Decimal = Field(ge=0)
    valid_from: datetime
    valid_until: datetime
    is_active: bool = True
    max_uses: int | None = Field(default=None, ge=1)
    min_order_amount: Decimal | None = Field(default=None, ge=0)
    applicable_cruises: list[str] | None = None
    applicable_categories: list[str] | None = None


class PromotionOut(BaseModel):
    code: str
    type: str
    value: Decimal
    valid_from: datetime
    valid_until: datetime
    is_active: bool
    max_uses: int | None
    current_uses: int
    min_order_amount: Decimal | None
    applicable_cruises: list[str] | None
    applicable_categories: list[str] | None


def _promotion_out(p: promotions.PromotionCode) -> PromotionOut:
    return PromotionOut(
        code=p.code,
        type=p.type,
        value=p.value,
        valid_from=p.valid_from,
        valid_until=p.valid_until,
        is_active=p.is_active,
        max_uses=p.max_uses,
        current_uses=p.current_uses,
        min_order_amount=p.min_order_amount,
        applicable_cruises=p.applicable_cruises,
        applicable_categories=p.applicable_categories,
    )


@app.get("/promotions", response_model=list[PromotionOut])
def list_promotions(
    x_company_id: Annotated[str | None, Header()] = None,
    _principal=Depends(require_roles("staff", "admin")),
):
    key = _ensure_company_key(x_company_id)
    rows = sorted((_PROMOTIONS_BY_COMPANY.get(key) or {}).values(), key=lambda p: p.code)
    return [_promotion_out(p) for p in rows]


@app.post("/promotions", response_model=PromotionOut)
def upsert_promotion(
    payload: PromotionIn,
    x_company_id: Annotated[str | None, Header()] = None,
    _principal=Depends(require_roles("staff", "admin")),
):
    key = _ensure_company_key(x_company_id)
    code = promotions.normalize_code(payload.code)
    valid_from, valid_until = _utc(payload.valid_from), _utc(payload.valid_until)
    if valid_until < valid_from:
        raise HTTPException(status_code=400, detail="valid_until must be after valid_from")
    if payload.type == "percentage" and payload.value > 100:
        raise HTTPException(status_code=400, detail="percentage value must be <= 100")

    existing = (_PROMOTIONS_BY_COMPANY.get(key) or {}).get(code)
    promo = promotions.PromotionCode(
        code=code,
        type=payload.type,
        value=payload.value,
        valid_from=valid_from,
        valid_until=valid_until,
        is_active=payload.is_active,
        max_uses=payload.max_uses,
        # Editing a promotion keeps its redemption count.
        current_uses=existing.current_uses if existing else 0,
        min_order_amount=payload.min_order_amount,
        applicable_cruises=payload.applicable_cruises,
        applicable_categories=payload.applicable_categories,
    )
    _PROMOTIONS_BY_COMPANY.setdefault(key, {})[code] = promo
    _persist()
    return _promotion_out(promo)


@app.delete("/promotions/{code}")
def delete_promotion(
    code: str,
    x_company_id: Annotated[str | None, Header()] = None,
    _principal=Depends(require_roles("staff", "admin")),
):
    key = _ensure_company_key(x_company_id)
    if (_PROMOTIONS_BY_COMPANY.get(key) or {}).pop(promotions.normalize_code(code), None) is None:
        raise HTTPException(status_code=404, detail="Promotion not found")
    _persist()
    return {"status": "ok"}


@app.post("/promotions/{code}/redeem", response_model=PromotionOut)
def redeem_promotion(
    code: str,
    x_company_id: Annotated[str | None, Header()] = None,
    _principal=Depends(require_roles("agent", "staff", "admin")),
):
    key = _ensure_company_key(x_company_id)
    code_n = promotions.normalize_code(code)
    promo = (_PROMOTIONS_BY_COMPANY.get(key) or {}).get(code_n)
    if promo is None:
        raise HTTPException(status_code=404, detail="Promotion not found")
    promo = promotions.redeem(promo)
    _PROMOTIONS_BY_COMPANY[key][code_n] = promo
    _persist()
    return _promotion_out(promo)


class PromotionValidateIn(BaseModel):
    code: str
    cruise_id: str | None = None
    cabin_category: str | None = None
    order_amount: Decimal = Field(ge=0)


class PromotionValidationOut(BaseModel):
    is_valid: bool
    code: str | None = None
    discount_amount: Decimal | None = None
    message: str | None = None


@app.post("/promotions/validate", response_model=PromotionValidationOut)
def validate_promotion(
    payload: PromotionValidateIn,
    x_company_id: Annotated[str | None, Header()] = None,
):
    key = _company_key(x_company_id)
    promo = (_PROMOTIONS_BY_COMPANY.get(key) or {}).get(promotions.normalize_code(payload.code))
    v = promotions.validate_promo_code(
        promo,
        cruise_id=payload.cruise_id,
        cabin_category=payload.cabin_category,
        order_amount=payload.order_amount,
        now=_now(),
    )
    return PromotionValidationOut(
        is_valid=v.is_valid,
        code=v.code,
        discount_amount=_money(v.discount_amount) if v.discount_amount is not None else None,
        message=v.message,
    )


class PricingRulesIn(BaseModel):
    group_3_to_5: Decimal | None = Field(default=None, ge=0, le=1)
    group_6_to_10: Decimal | None = Field(default=None, ge=0, le=1)
    group_11_to_15: Decimal | None = Field(default=None, ge=0, le=1)


class PricingRulesOut(PricingRulesIn):
    company_id: str


@app.get("/pricing-rules", response_model=PricingRulesOut)
def get_pricing_rules(
    x_company_id: Annotated[str | None, Header()] = None,
    _principal=Depends(require_roles("staff", "admin")),
):
    key = _ensure_company_key(x_company_id)
    r = _RULES_BY_COMPANY.get(key) or domain.PricingRules()
    return PricingRulesOut(company_id=key, group_3_to_5=r.group_3_to_5, group_6_to_10=r.group_6_to_10, group_11_to_15=r.group_11_to_15)


@app.put("/pricing-rules", response_model=PricingRulesOut)
def set_pricing_rules(
    payload: PricingRulesIn,
    x_company_id: Annotated[str | None, Header()] = None,
    _principal=Depends(require_roles("staff", "admin")),
):
    key = _ensure_company_key(x_company_id)
    try:
        rules = domain.validate_pricing_rules(
            domain.PricingRules(
                group_3_to_5=payload.group_3_to_5,
                group_6_to_10=payload.group_6_to_10,
                group_11_to_15=payload.group_11_to_15,
            )
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    _RULES_BY_COMPANY[key] = rules
    _persist()
    return PricingRulesOut(company_id=key, **payload.model_dump())


class CabinIn(BaseModel):
    category: str = Field(min_length=1)
    price: Decimal = Field(ge=0)
    cabin_number: str | None = None


class DraftIn(BaseModel):
    cruise_id: str | None = None
    cruise_name: str | None = None
    departure_date: date | None = None
    duration_days: int | None = Field(default=None, ge=0)
    starting_price: Decimal = Field(default=Decimal("0"), ge=0)
    cabin: CabinIn | None = None
    num_cabins: int = 1
    extras: list[ExtraIn] = Field(default_factory=list)
    promo_code: str | None = None
    current_step: int = 1


class DraftPatch(BaseModel):
    reset: bool = Field(default=False, description="Start over; applied before every other field")
    clear: list[Literal["cruise", "cabin", "extras"]] = Field(default_factory=list)
    cabin: CabinIn | None = None
    cabin_number: str | None = Field(default=None, description="Empty string clears the cabin number")
    num_cabins: int | None = None
    add_extras: list[ExtraIn] = Field(default_factory=list)
    remove_extra_ids: list[str] = Field(default_factory=list)
    extra_quantities: dict[str, int] = Field(default_factory=dict)
    promo_code: str | None = Field(default=None, description="Empty string clears the promo")
    step: int | None = None
    navigate: Literal["next", "previous"] | None = None


class DraftOut(BaseModel):
    draft_id: str
    cruise_id: str | None
    cruise_name: str | None
    departure_date: date | None
    duration_days: int | None
    cabin_category: str | None
    cabin_number: str | None
    base_price: Decimal
    num_cabins: int
    extras: list[ExtraOut]
    promo_code: str | None
    # Set when a stored promo stopped applying and was removed.
    promo_message: str | None = None
    current_step: int
    last_updated: datetime
    totals: QuoteOut


def _draft_out(d: drafts.BookingDraft, promo_message: str | None = None) -> DraftOut:
    return DraftOut(
        draft_id=d.draft_id,
        cruise_id=d.cruise_id,
        cruise_name=d.cruise_name,
        departure_date=d.departure_date,
        duration_days=d.duration_days,
        cabin_category=d.cabin_category,
        cabin_number=d.cabin_number,
        base_price=d.base_price,
        num_cabins=d.num_cabins,
        extras=[ExtraOut(id=e.id, name=e.name, price=e.price, quantity=e.quantity, per_day=e.per_day, category=e.category) for e in d.extras],
        promo_code=d.promo_code,
        promo_message=promo_message,
        current_step=d.current_step,
        last_updated=d.last_updated,
        totals=_quote_out(drafts.draft_totals(d, _RULES_BY_COMPANY.get(d.company_id))),
    )


def _with_promo(d: drafts.BookingDraft, code: str | None, now: datetime) -> drafts.BookingDraft:
    # Promo is validated against the pre-discount subtotal, as for quotes.
    order_amount = domain.compute_subtotal(d.base_price, d.num_cabins, list(d.extras), d.duration_days)
    discount = _resolve_promo(d.company_id, code, cruise_id=d.cruise_id, cabin_category=d.cabin_category, order_amount=order_amount)
    return drafts.set_promo(d, code, discount, now=now)


def _recheck_promo(d: drafts.BookingDraft, now: datetime) -> tuple[drafts.BookingDraft, str | None]:
    # A stored promo that no longer applies is dropped, not turned into an error.
    order_amount = domain.compute_subtotal(d.base_price, d.num_cabins, list(d.extras), d.duration_days)
    v = _check_promo(d.company_id, d.promo_code, cruise_id=d.cruise_id, cabin_category=d.cabin_category, order_amount=order_amount)
    if v is None:
        return d, None
    if not v.is_valid:
        return drafts.set_promo(d, None, 0, now=now), v.message
    return drafts.set_promo(d, d.promo_code, v.discount_amount or Decimal("0"), now=now), None


def _load_draft(draft_id: str) -> drafts.BookingDraft:
    d = _DRAFTS.get(draft_id)
    if d is None:
        raise HTTPException(status_code=404, detail="Draft not found")
    if drafts.is_expired(d, _now(), ttl=DRAFT_TTL):
        logger.info("Draft %s expired", draft_id)
        _DRAFTS.pop(draft_id, None)
        _persist()
        raise HTTPException(status_code=404, detail="Draft expired")
    return d


@app.post("/drafts", response_model=DraftOut)
def create_draft(
    payload: DraftIn,
    x_company_id: Annotated[str | None, Header()] = None,
    _principal=Depends(get_principal_optional),
):
    now = _now()
    _prune_expired_drafts(now)
    d = drafts.BookingDraft(draft_id=f"draft-{uuid4()}", last_updated=now, company_id=_company_key(x_company_id))
    try:
        if payload.cruise_id:
            d = drafts.select_cruise(
                d,
                cruise_id=payload.cruise_id,
                cruise_name=payload.cruise_name,
                departure_date=payload.departure_date,
                duration_days=payload.duration_days,
                starting_price=payload.starting_price,
                now=now,
            )
        if payload.cabin:
            d = drafts.select_cabin(d, category=payload.cabin.category, price=payload.cabin.price, cabin_number=payload.cabin.cabin_number, now=now)
        d = drafts.set_num_cabins(d, payload.num_cabins, now=now)
        for e in payload.extras:
            d = drafts.add_extra(d, e.to_domain(), now=now)
        if payload.promo_code:
            d = _with_promo(d, payload.promo_code, now)
        d = drafts.go_to_step(d, payload.current_step, now=now)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    _DRAFTS[d.draft_id] = d
    _persist()
    return _draft_out(d)


@app.get("/drafts/{draft_id}", response_model=DraftOut)
def get_draft(draft_id: str):
    return _draft_out(_load_draft(draft_id))


@app.patch("/drafts/{draft_id}", response_model=DraftOut)
def update_draft(draft_id: str, payload: DraftPatch):
    d = _load_draft(draft_id)
    now = _now()
    promo_message = None
    try:
        if payload.reset:
            d = drafts.reset(d, now=now)
        if "cruise" in payload.clear:
            d = drafts.clear_cruise(d, now=now)
        if "cabin" in payload.clear:
            d = drafts.clear_cabin(d, now=now)
        if "extras" in payload.clear:
            d = drafts.clear_extras(d, now=now)
        if payload.cabin:
            d = drafts.select_cabin(d, category=payload.cabin.category, price=payload.cabin.price, cabin_number=payload.cabin.cabin_number, now=now)
        if payload.cabin_number is not None:
            d = drafts.set_cabin_number(d, payload.cabin_number, now=now)
        if payload.num_cabins is not None:
            d = drafts.set_num_cabins(d, payload.num_cabins, now=now)
        for e in payload.add_extras:
            d = drafts.add_extra(d, e.to_domain(), now=now)
        for extra_id in payload.remove_extra_ids:
            d = drafts.remove_extra(d, extra_id, now=now)
        for extra_id, qty in payload.extra_quantities.items():
            d = drafts.update_extra_quantity(d, extra_id, qty, now=now)
        if payload.promo_code is not None:
            d = _with_promo(d, payload.promo_code, now)
        elif d.promo_code:
            # Cart changed: re-check the existing promo against the new subtotal.
            d, promo_message = _recheck_promo(d, now)
        if payload.step is not None:
            d = drafts.go_to_step(d, payload.step, now=now)
        if payload.navigate == "next":
            d = drafts.next_step(d, now=now)
        elif payload.navigate == "previous":
            d = drafts.previous_step(d, now=now)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    _DRAFTS[d.draft_id] = d
    _persist()
    return _draft_out(d, promo_message)


@app.delete("/drafts/{draft_id}")
def delete_draft(draft_id: str):
    if _DRAFTS.pop(draft_id, None) is None:
        raise HTTPException(status_code=404, detail="Draft not found")
    _persist()
    return {"status": "ok"}
