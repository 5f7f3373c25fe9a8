# test_dashboard_reports.py
from cinepos.services.dashboard import compute_dashboard, dashboard_cache
from cinepos.services.order_store import business_date


def jprint(step, r):
    """Helper to print response and assert on failure."""
    assert 200 <= r.status_code < 300, f"{step} -> {r.status_code}: {r.text}"
    return r.json() if r.headers.get("content-type","").startswith("application/json") else r.text


def _dash(client, base_url, headers, tid, **params):
    return jprint("GET /theater-dashboard", client.get(f"{base_url}/theater-dashboard/{tid}", headers=headers, params=params))

def _order(client, base_url, headers, order_body, items, **kw):
    return jprint("POST /orders", client.post(f"{base_url}/orders", headers=headers, json=order_body(items, **kw)))["order"]


def test_dashboard_tracks_orders_and_matches_direct_computation(client, base_url, auth_headers, make_product, order_body, rng_suffix, db):
    r = client.post(f"{base_url}/theaters", headers=auth_headers, json={"name": f"Dash {rng_suffix}"})
    tid = jprint("POST /theaters", r)["id"]
    popcorn = make_product(name="Popcorn", theater=tid, category=None, price=100.0)
    cola = make_product(name="Cola", theater=tid, category=None, price=50.0, tax_rate=0)
    today = business_date().isoformat()

    empty = _dash(client, base_url, auth_headers, tid)
    assert empty["stats"]["totalOrders"] == 0
    assert empty["stats"]["totalProducts"] == 2

    _order(client, base_url, auth_headers, order_body, [(popcorn["id"], 2)], theater=tid, source="pos")
    _order(client, base_url, auth_headers, order_body, [(cola["id"], 1)], theater=tid, source="offline-pos")
    gone = _order(client, base_url, auth_headers, order_body, [(cola["id"], 3)], theater=tid, source="kiosk")
    jprint("cancel", client.post(f"{base_url}/orders/{gone['id']}/cancel", headers=auth_headers))

    dash = _dash(client, base_url, auth_headers, tid, startDate=today, endDate=today)
    assert dash["version"] > empty["version"]
    assert dash["stats"]["totalOrders"] == 3
    assert dash["stats"]["totalRevenue"] == 260.0
    assert dash["stats"]["todayRevenue"] == 260.0
    # offline-pos rolls into pos; the cancelled kiosk order earns nothing
    assert dash["channelBreakdown"]["pos"] == {"amount": 260.0, "orders": 2, "methods": {"cash": 260.0}}
    assert dash["channelBreakdown"]["kiosk"]["orders"] == 0
    assert dash["salesOverTime"] == [{"date": today, "revenue": 260.0, "orders": 3}]
    assert dash["categoryEarnings"] == [{"category": "Uncategorized", "quantity": 3, "amount": 260.0}]
    assert [p["name"] for p in dash["topProducts"]] == [popcorn["name"], cola["name"]]
    assert dash["recentTransactions"][0]["orderId"] == gone["id"]
    assert dash["recentTransactions"][0]["status"] == "CANCELLED"

    db.expire_all()
    direct = compute_dashboard(db, tid, business_date(), business_date())
    assert direct == dash

    # unchanged since the version we hold
    same = _dash(client, base_url, auth_headers, tid, startDate=today, endDate=today, ifVersion=dash["version"])
    assert same == {"version": dash["version"], "notModified": True}

    before = dashboard_cache.invalidations
    _order(client, base_url, auth_headers, order_body, [(cola["id"], 1)], theater=tid, source="qr_code")
    fresh = _dash(client, base_url, auth_headers, tid, startDate=today, endDate=today, ifVersion=dash["version"])
    assert dashboard_cache.invalidations > before
    assert fresh["stats"]["totalOrders"] == 4
    assert fresh["channelBreakdown"]["online"]["amount"] == 50.0
    db.expire_all()
    assert compute_dashboard(db, tid, business_date(), business_date()) == fresh

def test_daily_sales_report(client, base_url, auth_headers, make_product, order_body, rng_suffix):
    r = client.post(f"{base_url}/theaters", headers=auth_headers, json={"name": f"Report {rng_suffix}"})
    tid = jprint("POST /theaters", r)["id"]
    p = make_product(theater=tid, category=None, price=100.0)
    _order(client, base_url, auth_headers, order_body, [(p["id"], 1)], theater=tid)
    _order(client, base_url, auth_headers, order_body, [(p["id"], 1)], theater=tid, source="kiosk")
    gone = _order(client, base_url, auth_headers, order_body, [(p["id"], 2)], theater=tid)
    jprint("cancel", client.post(f"{base_url}/orders/{gone['id']}/cancel", headers=auth_headers))

    rep = jprint("GET /reports/daily_sales", client.get(f"{base_url}/reports/daily_sales", headers=auth_headers,
                                                        params={"theaterId": tid}))
    assert len(rep["days"]) == 1
    day = rep["days"][0]
    assert day["orders"] == 2
    assert day["total"] == 210.0
    assert day["cancelledOrders"] == 1
    assert day["cancelledAmount"] == 210.0
    assert [(b["channel"], b["paymentMethod"], b["orders"]) for b in day["buckets"]] == [("kiosk", "cash", 1), ("pos", "cash", 1)]
    assert day["buckets"][0]["cgst"] == 2.5
