import dataclasses
import json
import logging
import os
from datetime import date, datetime
from decimal import Decimal

from . import domain, drafts
from .promotions import PromotionCode

DATA_FILE = os.getenv("DATA_FILE_PATH", "pricing_data.json")

logger = logging.getLogger(__name__)


def _json_default(obj):
    if isinstance(obj, (date, datetime)):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return str(obj)
    if dataclasses.is_dataclass(obj):
        return dataclasses.asdict(obj)
    raise TypeError(f"Type {type(obj)} not serializable")


def _dec(x) -> Decimal | None:
    return Decimal(str(x)) if x is not None else None


def save_data(
    promotions_by_company: dict[str, dict[str, PromotionCode]],
    rules_by_company: dict[str, domain.PricingRules],
    drafts_by_id: dict[str, drafts.BookingDraft],
    path: str | None = None,
) -> None:
    data = {
        # company -> code -> promotion; codes are already unique per company
        "promotions": {cid: list(promos.values()) for cid, promos in promotions_by_company.items()},
        "pricing_rules": rules_by_company,
        "drafts": [drafts.to_dict(d) for d in drafts_by_id.values()],
    }
    with open(path or DATA_FILE, "w") as f:
        json.dump(data, f, default=_json_default, indent=2)


def load_data(path: str | None = None):
    """
    Returns (promotions_by_company, rules_by_company, drafts_by_id).

    A missing or unreadable file yields empty state.
    """
    path = path or DATA_FILE
    if not os.path.exists(path):
        return {}, {}, {}

    with open(path, "r") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable pricing data file %s", path)
            return {}, {}, {}

    promotions: dict[str, dict[str, PromotionCode]] = {}
    for cid, rows in data.get("promotions", {}).items():
        promotions[cid] = {}
        for r in rows:
            promo = PromotionCode(
                code=r["code"],
                type=r["type"],
                value=Decimal(str(r["value"])),
                valid_from=datetime.fromisoformat(r["valid_from"]),
                valid_until=datetime.fromisoformat(r["valid_until"]),
                is_active=bool(r.get("is_active", True)),
                max_uses=r.get("max_uses"),
                current_uses=int(r.get("current_uses") or 0),
                min_order_amount=_dec(r.get("min_order_amount")),
                applicable_cruises=r.get("applicable_cruises"),
                applicable_categories=r.get("applicable_categories"),
            )
            promotions[cid][promo.code] = promo

    rules: dict[str, domain.PricingRules] = {}
    for cid, raw in data.get("pricing_rules", {}).items():
        rules[cid] = domain.PricingRules(
            group_3_to_5=_dec(raw.get("group_3_to_5")),
            group_6_to_10=_dec(raw.get("group_6_to_10")),
            group_11_to_15=_dec(raw.get("group_11_to_15")),
        )

    drafts_by_id = {}
    for raw in data.get("drafts", []):
        d = drafts.from_dict(raw)
        drafts_by_id[d.draft_id] = d

    logger.info("Loaded pricing data from %s (%d drafts)", path, len(drafts_by_id))
    return promotions, rules, drafts_by_id
