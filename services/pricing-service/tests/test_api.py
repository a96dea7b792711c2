from dataclasses import replace
from datetime import timedelta

import jwt
import pytest
from fastapi.testclient import TestClient

from app import events, main

client = TestClient(main.app)


def _auth_headers(role: str = "admin", company_id: str = "company-1") -> dict[str, str]:
    token = jwt.encode({"role": role}, "dev-secret-change-me", algorithm="HS256")
    return {"Authorization": f"Bearer {token}", "X-Company-Id": company_id}


@pytest.fixture(autouse=True)
def published(monkeypatch):
    sent = []

    async def _publish(routing_key, payload):
        sent.append((routing_key, payload))

    monkeypatch.setattr(events, "publish", _publish)
    return sent


def _create_promo(company_id: str, **kw):
    body = {
        "code": "welcome100",
        "type": "fixed",
        "value": "100",
        "valid_from": "2020-01-01T00:00:00Z",
        "valid_until": "2099-01-01T00:00:00Z",
    }
    body.update(kw)
    r = client.post("/promotions", json=body, headers=_auth_headers(company_id=company_id))
    assert r.status_code == 200, r.text
    return r.json()


def test_health():
    assert client.get("/health").json() == {"status": "ok"}


def test_quote_group_discount_and_price_change_event(published):
    r = client.post(
        "/quote",
        json={"cruise_id": "cruise-123", "cabin_category": "inside", "base_price": "1000", "num_cabins": 5},
        headers={"X-Company-Id": "company-quote"},
    )
    assert r.status_code == 200, r.text
    q = r.json()
    assert q["cabin_total"] == "5000.00"
    assert q["group_discount"] == {"kind": "rate", "value": "0.05", "message": None}
    assert q["group_discount_amount"] == "250.00"
    assert q["final_total"] == "4750.00"
    assert [l["code"] for l in q["lines"]] == ["cabins", "discount.group"]

    (routing_key, payload), = published
    assert routing_key == "pricing.price_changed"
    assert payload["company_id"] == "company-quote"
    assert payload["change_reason"] == "group_discount"


def test_quote_without_discount_publishes_nothing(published):
    r = client.post("/quote", json={"base_price": "1000", "num_cabins": 1})
    assert r.status_code == 200, r.text
    assert r.json()["final_total"] == "1000.00"
    assert published == []


def test_quote_sixteen_cabins_signals_sales_contact():
    r = client.post("/quote", json={"base_price": "1000", "num_cabins": 16})
    assert r.status_code == 200, r.text
    q = r.json()
    assert q["group_discount"]["kind"] == "contact_sales_required"
    assert "sales team" in q["group_discount"]["message"]
    assert q["final_total"] == "16000.00"


def test_quote_with_per_day_extra_and_cancellation():
    r = client.post(
        "/quote",
        json={
            "base_price": "1000",
            "num_cabins": 1,
            "duration_days": 7,
            "extras": [{"id": "wifi", "name": "Wi-Fi", "price": "50", "quantity": 2, "per_day": True}],
            "departure_date": "2025-12-01",
            "cancellation_date": "2025-11-15",
        },
    )
    assert r.status_code == 200, r.text
    q = r.json()
    assert q["extras_total"] == "700.00"
    assert q["final_total"] == "1700.00"
    assert q["cancellation"]["days_before"] == 16
    assert q["cancellation"]["fee_rate"] == "0.25"
    assert q["cancellation"]["fee_amount"] == "425.00"


def test_quote_validates_promo_code():
    _create_promo("company-promo")
    r = client.post(
        "/quote",
        json={"base_price": "1000", "num_cabins": 1, "promo_code": "Welcome100"},
        headers={"X-Company-Id": "company-promo"},
    )
    assert r.status_code == 200, r.text
    q = r.json()
    assert q["promo_discount"] == "100.00"
    assert q["final_total"] == "900.00"
    assert q["applied_rules"] == ["promo_WELCOME100"]

    r = client.post(
        "/quote",
        json={"base_price": "1000", "num_cabins": 1, "promo_code": "NOPE"},
        headers={"X-Company-Id": "company-promo"},
    )
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid promotion code"


def test_quote_rejects_bad_input():
    assert client.post("/quote", json={"base_price": "-1", "num_cabins": 1}).status_code == 422
    assert client.post("/quote", json={"base_price": "100", "num_cabins": 0}).status_code == 422


def test_group_discount_endpoint():
    assert client.get("/group-discount", params={"num_cabins": 6}).json()["value"] == "0.10"
    assert client.get("/group-discount", params={"num_cabins": 16}).json()["kind"] == "contact_sales_required"
    assert client.get("/group-discount", params={"num_cabins": 0}).status_code == 400


def test_group_booking_quote():
    r = client.post("/group-bookings/quote", json={"base_price": "1000", "num_cabins": 6})
    assert r.status_code == 200, r.text
    g = r.json()
    assert g["discount_percentage"] == "0.10"
    assert g["final_total"] == "5400.00"
    assert g["requires_sales_contact"] is False

    r = client.post("/group-bookings/quote", json={"base_price": "1000", "num_cabins": 2})
    assert r.status_code == 400
    assert "Minimum 3 cabins" in r.json()["detail"]

    g = client.post("/group-bookings/quote", json={"base_price": "1000", "num_cabins": 16}).json()
    assert g["requires_sales_contact"] is True
    assert g["final_total"] == "16000.00"


def test_company_group_rates():
    headers = _auth_headers(company_id="company-rules")
    r = client.put("/pricing-rules", json={"group_6_to_10": "0.12"}, headers=headers)
    assert r.status_code == 200, r.text
    r = client.post("/group-bookings/quote", json={"base_price": "1000", "num_cabins": 6}, headers={"X-Company-Id": "company-rules"})
    assert r.json()["final_total"] == "5280.00"
    assert client.get("/pricing-rules", headers=headers).json()["group_6_to_10"] == "0.12"


def test_cancellation_fee_endpoint():
    r = client.post("/cancellation-fee", json={"total": "4750", "departure_date": "2025-12-01", "cancellation_date": "2025-10-01"})
    assert r.status_code == 200, r.text
    c = r.json()
    assert c["fee_rate"] == "0"
    assert c["refund_amount"] == "4750.00"


def test_promotion_admin_requires_staff():
    body = {"code": "X", "type": "fixed", "value": "1", "valid_from": "2020-01-01T00:00:00Z", "valid_until": "2099-01-01T00:00:00Z"}
    assert client.post("/promotions", json=body).status_code == 401
    assert client.post("/promotions", json=body, headers=_auth_headers(role="guest")).status_code == 403
    token = jwt.encode({"role": "admin"}, "dev-secret-change-me", algorithm="HS256")
    assert client.post("/promotions", json=body, headers={"Authorization": f"Bearer {token}"}).status_code == 400


def test_promotion_lifecycle():
    company = "company-lifecycle"
    p = _create_promo(company, code="spring", type="percentage", value="10", max_uses=1)
    assert p["code"] == "SPRING"

    listed = client.get("/promotions", headers=_auth_headers(company_id=company)).json()
    assert [x["code"] for x in listed] == ["SPRING"]

    v = client.post("/promotions/validate", json={"code": "spring", "order_amount": "2000"}, headers={"X-Company-Id": company}).json()
    assert v["is_valid"] is True
    assert v["discount_amount"] == "200.00"

    r = client.post("/promotions/SPRING/redeem", headers=_auth_headers(role="agent", company_id=company))
    assert r.json()["current_uses"] == 1
    v = client.post("/promotions/validate", json={"code": "spring", "order_amount": "2000"}, headers={"X-Company-Id": company}).json()
    assert v["is_valid"] is False
    assert v["message"] == "Promotion code usage limit reached"

    assert client.delete("/promotions/spring", headers=_auth_headers(company_id=company)).status_code == 200
    assert client.delete("/promotions/spring", headers=_auth_headers(company_id=company)).status_code == 404


def test_draft_lifecycle():
    company = "company-drafts"
    _create_promo(company, code="DRAFT50", value="50")
    r = client.post(
        "/drafts",
        json={
            "cruise_id": "cruise-123",
            "cruise_name": "Mediterranean Adventure",
            "departure_date": "2025-12-01",
            "duration_days": 7,
            "starting_price": "899",
            "cabin": {"category": "balcony", "price": "1000"},
            "num_cabins": 2,
            "extras": [{"id": "wifi", "price": "20", "per_day": True}],
        },
        headers={"X-Company-Id": company},
    )
    assert r.status_code == 200, r.text
    d = r.json()
    draft_id = d["draft_id"]
    assert d["totals"]["final_total"] == "2140.00"

    r = client.patch(
        f"/drafts/{draft_id}",
        json={
            "num_cabins": 3,
            "add_extras": [{"id": "wifi", "price": "20", "per_day": True}],
            "promo_code": "draft50",
            "navigate": "next",
        },
    )
    assert r.status_code == 200, r.text
    d = r.json()
    assert d["num_cabins"] == 3
    assert d["extras"][0]["quantity"] == 2
    assert d["promo_code"] == "DRAFT50"
    assert d["current_step"] == 2
    # 3000 cabins + 280 wifi - 150 group - 50 promo
    assert d["totals"]["final_total"] == "3080.00"

    assert client.get(f"/drafts/{draft_id}").json()["draft_id"] == draft_id
    assert client.delete(f"/drafts/{draft_id}").status_code == 200
    assert client.get(f"/drafts/{draft_id}").status_code == 404


def test_expired_draft_is_dropped():
    d = client.post("/drafts", json={"cabin": {"category": "inside", "price": "500"}}).json()
    draft_id = d["draft_id"]
    stored = main._DRAFTS[draft_id]
    main._DRAFTS[draft_id] = replace(stored, last_updated=stored.last_updated - timedelta(hours=25))

    r = client.get(f"/drafts/{draft_id}")
    assert r.status_code == 404
    assert draft_id not in main._DRAFTS


def test_pricing_rules_must_keep_larger_groups_cheaper():
    company = "company-monotonic"
    headers = _auth_headers(company_id=company)
    r = client.put("/pricing-rules", json={"group_3_to_5": "0.30"}, headers=headers)
    assert r.status_code == 400
    assert "must not decrease" in r.json()["detail"]
    assert company not in main._RULES_BY_COMPANY

    rates = [
        client.get("/group-discount", params={"num_cabins": n}, headers={"X-Company-Id": company}).json()["value"]
        for n in range(1, 16)
    ]
    assert [float(v) for v in rates] == sorted(float(v) for v in rates)


def test_quote_per_day_extra_without_duration():
    r = client.post(
        "/quote",
        json={"base_price": "1000", "extras": [{"id": "wifi", "name": "Wi-Fi", "price": "100", "per_day": True}]},
    )
    assert r.status_code == 200, r.text
    q = r.json()
    assert q["extras_total"] == "100.00"
    assert q["final_total"] == "1100.00"


def test_quote_with_caller_promo_amount_publishes_nothing(published):
    r = client.post(
        "/quote",
        json={"base_price": "1000", "num_cabins": 1, "promo_code": "PARTNER", "promo_discount": "300"},
    )
    assert r.status_code == 200, r.text
    assert r.json()["final_total"] == "700.00"
    assert published == []


def test_group_booking_quote_by_cabin_category():
    r = client.post(
        "/group-bookings/quote",
        json={"base_price": "1000", "cabin_categories": ["inside", "inside", "oceanview", "balcony", "suite", "suite"]},
    )
    assert r.status_code == 200, r.text
    g = r.json()
    assert g["num_cabins"] == 6
    assert g["cabin_prices"] == ["1000.00", "1000.00", "1300.00", "1800.00", "3000.00", "3000.00"]
    assert g["base_total"] == "11100.00"
    assert g["discount_percentage"] == "0.10"
    assert g["final_total"] == "9990.00"

    r = client.post("/group-bookings/quote", json={"base_price": "1000", "cabin_categories": ["suite", "suite"]})
    assert r.status_code == 400
    assert "Minimum 3 cabins" in r.json()["detail"]
    r = client.post("/group-bookings/quote", json={"base_price": "1000", "num_cabins": 4, "cabin_categories": ["suite"] * 3})
    assert r.status_code == 400
    assert client.post("/group-bookings/quote", json={"base_price": "1000"}).status_code == 400
    assert client.post("/group-bookings/quote", json={"base_price": "1000", "cabin_categories": ["attic"] * 3}).status_code == 422


def test_dev_token_carries_company_id():
    r = client.post("/dev/token", json={"sub": "agent-7", "role": "agent", "company_id": "company-token"})
    assert r.status_code == 200, r.text
    claims = jwt.decode(r.json()["access_token"], "dev-secret-change-me", algorithms=["HS256"])
    assert claims["company_id"] == "company-token"
    assert claims["role"] == "agent"

    r = client.post("/dev/token", json={"sub": "guest-1"})
    claims = jwt.decode(r.json()["access_token"], "dev-secret-change-me", algorithms=["HS256"])
    assert "company_id" not in claims


def test_expired_drafts_are_pruned_on_create():
    old_ids = [client.post("/drafts", json={"cabin": {"category": "inside", "price": "500"}}).json()["draft_id"] for _ in range(5)]
    for draft_id in old_ids:
        stored = main._DRAFTS[draft_id]
        main._DRAFTS[draft_id] = replace(stored, last_updated=stored.last_updated - timedelta(days=30))

    r = client.post("/drafts", json={"cabin": {"category": "inside", "price": "500"}})
    assert r.status_code == 200, r.text
    assert r.json()["draft_id"] in main._DRAFTS
    for draft_id in old_ids:
        assert draft_id not in main._DRAFTS


def test_draft_clear_and_reset():
    r = client.post(
        "/drafts",
        json={
            "cruise_id": "cruise-9",
            "duration_days": 5,
            "starting_price": "700",
            "cabin": {"category": "suite", "price": "2100", "cabin_number": "1001"},
            "extras": [{"id": "spa", "price": "150"}],
        },
    )
    draft_id = r.json()["draft_id"]

    d = client.patch(f"/drafts/{draft_id}", json={"cabin_number": "1002"}).json()
    assert d["cabin_number"] == "1002"

    d = client.patch(f"/drafts/{draft_id}", json={"clear": ["cabin", "extras"]}).json()
    assert d["cabin_category"] is None
    assert d["cabin_number"] is None
    assert d["extras"] == []
    assert d["cruise_id"] == "cruise-9"

    d = client.patch(f"/drafts/{draft_id}", json={"clear": ["cruise"]}).json()
    assert d["cruise_id"] is None
    assert d["duration_days"] is None
    assert d["totals"]["final_total"] == "0.00"

    d = client.patch(
        f"/drafts/{draft_id}",
        json={"reset": True, "cabin": {"category": "inside", "price": "400"}, "num_cabins": 2},
    ).json()
    assert d["draft_id"] == draft_id
    assert d["cabin_category"] == "inside"
    assert d["num_cabins"] == 2
    assert d["current_step"] == 1
    assert d["totals"]["final_total"] == "800.00"


def test_draft_drops_promo_that_stopped_applying():
    company = "company-stale-promo"
    _create_promo(company, code="ONCE", value="50", max_uses=1)
    r = client.post(
        "/drafts",
        json={"cabin": {"category": "inside", "price": "500"}, "promo_code": "once"},
        headers={"X-Company-Id": company},
    )
    assert r.status_code == 200, r.text
    draft_id = r.json()["draft_id"]
    assert r.json()["promo_code"] == "ONCE"

    assert client.post("/promotions/ONCE/redeem", headers=_auth_headers(role="agent", company_id=company)).status_code == 200

    r = client.patch(f"/drafts/{draft_id}", json={"num_cabins": 2})
    assert r.status_code == 200, r.text
    d = r.json()
    assert d["promo_code"] is None
    assert d["promo_message"] == "Promotion code usage limit reached"
    assert d["totals"]["final_total"] == "1000.00"

    # a newly entered code is still rejected outright
    r = client.patch(f"/drafts/{draft_id}", json={"promo_code": "once"})
    assert r.status_code == 400
