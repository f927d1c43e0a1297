"""
tests/test_finance.py

Financial movements and balance aggregation.
"""
from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace

import pytest

from conftest import auth_headers, make_user
from medcenter.services.finance import MalformedAmount, summarize, to_amount


def _movement(direction, amount, day="2024-06-10", **extra):
    body = {
        "direction": direction,
        "category": "therapy" if direction == "income" else "supplies",
        "description": f"{direction} entry",
        "amount": amount,
        "date": day,
        "payment_method": "cash",
    }
    body.update(extra)
    return body


# ═══════════════════════════════════════════════════════════════════
# 1. AMOUNT PARSING
# ═══════════════════════════════════════════════════════════════════

@pytest.mark.parametrize(
    "raw,expected",
    [
        ("500.00", Decimal("500.00")),
        ("120.5", Decimal("120.50")),
        (75, Decimal("75.00")),
        (0.1, Decimal("0.10")),
        (" 10.005 ", Decimal("10.01")),
        (Decimal("3.333"), Decimal("3.33")),
    ],
)
def test_to_amount_accepts_numbers(raw, expected):
    assert to_amount(raw) == expected


@pytest.mark.parametrize(
    "raw", ["abc", "", None, True, "NaN", "Infinity", "0", "-5", 0, -1.5, "0.004", Decimal("0.0049"), "1e30"],
)
def test_to_amount_rejects_malformed(raw):
    with pytest.raises(MalformedAmount):
        to_amount(raw)


def test_summarize_is_exact_in_cents():
    rows = [SimpleNamespace(direction="income", amount="0.10") for _ in range(3)]
    rows.append(SimpleNamespace(direction="expense", amount="0.30"))
    totals = summarize(rows)
    assert totals.total_income == Decimal("0.30")
    assert totals.total_expenses == Decimal("0.30")
    assert totals.balance == Decimal("0.00")
    assert totals.count == 4


def test_summarize_empty_set_is_zero():
    totals = summarize([])
    assert totals.balance == Decimal("0.00")
    assert totals.count == 0


def test_summarize_raises_on_unreadable_stored_amount():
    rows = [
        SimpleNamespace(direction="income", amount="100.00"),
        SimpleNamespace(direction="income", amount="12,50"),
    ]
    with pytest.raises(MalformedAmount):
        summarize(rows)


# ═══════════════════════════════════════════════════════════════════
# 2. API
# ═══════════════════════════════════════════════════════════════════

async def test_daily_balance(client):
    r1 = await client.post("/api/movements", json=_movement("income", "500.00"))
    assert r1.status_code == 201, r1.text
    r2 = await client.post("/api/movements", json=_movement("expense", "120.50"))
    assert r2.status_code == 201, r2.text
    await client.post("/api/movements", json=_movement("income", "999.00", day="2024-06-11"))

    resp = await client.get("/api/movements/balance/2024-06-10")
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["total_income"] == "500.00"
    assert data["total_expenses"] == "120.50"
    assert data["balance"] == "379.50"
    assert data["count"] == 2
    assert len(data["movements"]) == 2


async def test_balance_for_empty_day_is_zero(client):
    resp = await client.get("/api/movements/balance/2024-01-01")
    data = resp.json()["data"]
    assert data["balance"] == "0.00"
    assert data["movements"] == []


async def test_malformed_amount_is_rejected(client):
    resp = await client.post("/api/movements", json=_movement("income", "twelve"))
    assert resp.status_code == 400
    assert resp.json()["error"] == "MALFORMED_AMOUNT"

    resp = await client.post("/api/movements", json=_movement("income", "-3"))
    assert resp.status_code == 400


async def test_sub_cent_amount_is_rejected_and_day_stays_readable(client):
    await client.post("/api/movements", json=_movement("income", "25.00"))

    resp = await client.post("/api/movements", json=_movement("income", "0.004"))
    assert resp.status_code == 400
    assert resp.json()["error"] == "MALFORMED_AMOUNT"

    created = (await client.post("/api/movements", json=_movement("expense", "5"))).json()["data"]
    patched = await client.put(f"/api/movements/{created['id']}", json={"amount": "0.001"})
    assert patched.status_code == 400

    balance = await client.get("/api/movements/balance/2024-06-10")
    assert balance.status_code == 200
    assert balance.json()["data"]["balance"] == "20.00"

    report = await client.post("/api/reports/generate/2024-06-10")
    assert report.status_code == 200, report.text


async def test_invalid_direction_and_method(client):
    resp = await client.post("/api/movements", json=_movement("refund", "10"))
    assert resp.status_code == 400

    resp = await client.post("/api/movements", json=_movement("income", "10", payment_method="bitcoin"))
    assert resp.status_code == 400


async def test_update_recomputes_balance(client):
    created = (await client.post("/api/movements", json=_movement("income", "100"))).json()["data"]

    resp = await client.put(f"/api/movements/{created['id']}", json={"amount": "80.25"})
    assert resp.status_code == 200
    assert resp.json()["data"]["amount"] == "80.25"

    balance = (await client.get("/api/movements/balance/2024-06-10")).json()["data"]
    assert balance["balance"] == "80.25"


async def test_delete_movement(client):
    created = (await client.post("/api/movements", json=_movement("expense", "40"))).json()["data"]

    assert (await client.delete(f"/api/movements/{created['id']}")).status_code == 200
    assert (await client.get(f"/api/movements/{created['id']}")).status_code == 404


async def test_history_range_and_filters(client):
    await client.post("/api/movements", json=_movement("income", "100", day="2024-06-01"))
    await client.post("/api/movements", json=_movement("expense", "30", day="2024-06-05"))
    await client.post("/api/movements", json=_movement("income", "50", day="2024-07-01"))

    resp = await client.get("/api/movements/history", params={"start": "2024-06-01", "end": "2024-06-30"})
    data = resp.json()["data"]
    assert data["summary"]["balance"] == "70.00"
    assert [m["date"] for m in data["movements"]] == ["2024-06-05", "2024-06-01"]

    incomes = (await client.get("/api/movements/history", params={"direction": "income"})).json()["data"]
    assert incomes["summary"]["total_income"] == "150.00"
    assert incomes["summary"]["total_expenses"] == "0.00"


async def test_category_filter_matches_wildcards_literally(client):
    await client.post("/api/movements", json=_movement("income", "100", category="therapy"))
    await client.post("/api/movements", json=_movement("expense", "30", category="rent_office"))

    pct = (await client.get("/api/movements/history", params={"category": "%"})).json()["data"]
    assert pct["summary"]["count"] == 0

    under = (await client.get("/api/movements", params={"category": "t_o"})).json()["data"]
    assert [m["category"] for m in under["movements"]] == ["rent_office"]

    plain = (await client.get("/api/movements/history", params={"category": "ther"})).json()["data"]
    assert plain["summary"]["total_income"] == "100.00"


async def test_history_rejects_inverted_range(client):
    resp = await client.get("/api/movements/history", params={"start": "2024-06-30", "end": "2024-06-01"})
    assert resp.status_code == 400


async def test_movements_are_scoped_to_owner(client, session_factory, settings):
    created = (await client.post("/api/movements", json=_movement("income", "100"))).json()["data"]
    other = await make_user(session_factory, email="other@example.com")

    resp = await client.get(f"/api/movements/{created['id']}", headers=auth_headers(other, settings))
    assert resp.status_code == 404

    balance = await client.get("/api/movements/balance/2024-06-10", headers=auth_headers(other, settings))
    assert balance.json()["data"]["balance"] == "0.00"


async def test_list_paginates(client):
    for i in range(3):
        await client.post("/api/movements", json=_movement("income", str(10 + i)))

    resp = await client.get("/api/movements", params={"limit": 2, "page": 2})
    data = resp.json()["data"]
    assert data["pagination"] == {"total": 3, "page": 2, "limit": 2, "total_pages": 2}
    assert len(data["movements"]) == 1
