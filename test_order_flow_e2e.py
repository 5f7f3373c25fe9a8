# test_order_flow_e2e.py
import uuid

from cinepos.services.pricing import compute_bill, lines_from_items
from cinepos.services import order_store


def jprint(step, r):
    """Helper to print response and assert on failure."""
    assert 200 <= r.status_code < 300, f"{step} -> {r.status_code}: {r.text}"
    return r.json() if r.headers.get("content-type","").startswith("application/json") else r.text

def expect_error(step, r, status, kind):
    assert r.status_code == status, f"{step} -> {r.status_code}: {r.text}"
    body = r.json()
    assert body["error"] == kind, f"{step} -> {body}"
    return body


def test_cash_pos_order_happy_path(client, base_url, staff_headers, make_product, order_body, db):
    p = make_product(price=100.0, stock=10)

    r = client.post(f"{base_url}/orders", headers=staff_headers,
                    json=order_body([(p["id"], 2)], clientTotal=210.0))
    assert r.status_code == 201, r.text
    order = r.json()["order"]
    assert r.json()["gatewayParams"] is None
    assert order["status"] == "PAID"
    assert order["payment"]["status"] == "PAID"
    assert order["pricing"]["subtotal"] == 200.0
    assert order["pricing"]["cgst"] == 5.0 and order["pricing"]["sgst"] == 5.0
    assert order["pricing"]["tax"] == 10.0
    assert order["pricing"]["total"] == 210.0
    assert order["orderNumber"].startswith("GA-")
    assert order["items"][0]["category"] == "Food"

    stock = jprint("GET /stock", client.get(f"{base_url}/stock/{p['id']}", headers=staff_headers))
    assert stock["available"] == 8
    assert stock["committed"] == 2
    assert stock["reserved"] == 0

    detail = jprint("GET /orders/{id}", client.get(f"{base_url}/orders/{order['id']}", headers=staff_headers))
    moves = [(a["from"], a["to"]) for a in detail["audit"] if a["action"] == "TRANSITION"]
    assert moves == [("PENDING", "PAID")]

    # persisted snapshot reprices to the same totals
    o = order_store.get(db, order["id"])
    bill = compute_bill(lines_from_items(o.items))
    assert (bill.total, bill.tax, bill.subtotal) == (o.total, o.tax, o.subtotal)

def test_retry_with_same_key_returns_original(client, base_url, staff_headers, make_product, order_body):
    p = make_product(stock=5)
    body = order_body([(p["id"], 1)])

    first = client.post(f"{base_url}/orders", headers=staff_headers, json=body)
    second = client.post(f"{base_url}/orders", headers=staff_headers, json=body)
    assert first.status_code == second.status_code == 201
    assert second.headers.get("Idempotent-Replayed") == "true"
    assert first.json() == second.json()

    stock = jprint("GET /stock", client.get(f"{base_url}/stock/{p['id']}", headers=staff_headers))
    assert stock["available"] == 4

    listing = jprint("GET /orders", client.get(f"{base_url}/orders", headers=staff_headers,
                                               params={"theaterId": body["theaterId"], "search": first.json()["order"]["orderNumber"]}))
    assert listing["pagination"]["totalItems"] == 1

def test_boundaries_on_items_and_quantity(client, base_url, staff_headers, make_product, order_body):
    p = make_product(stock=5)

    r = client.post(f"{base_url}/orders", headers=staff_headers, json=order_body([]))
    expect_error("empty items", r, 422, "VALIDATION")

    r = client.post(f"{base_url}/orders", headers=staff_headers, json=order_body([(p["id"], 0)]))
    expect_error("quantity 0", r, 422, "VALIDATION")

    r = client.post(f"{base_url}/orders", headers=staff_headers, json=order_body([("no-such-product", 1)]))
    expect_error("unknown product", r, 422, "VALIDATION")

    r = client.post(f"{base_url}/orders", headers=staff_headers, json=order_body([(p["id"], 1)]))
    assert r.status_code == 201, r.text

    r = client.post(f"{base_url}/orders", headers=staff_headers, json=order_body([(p["id"], 99)]))
    body = expect_error("too many", r, 409, "INSUFFICIENT_STOCK")
    assert body["productId"] == p["id"]
    assert body["available"] == 4

def test_payment_method_rules(client, base_url, staff_headers, make_product, order_body):
    p = make_product(stock=5)

    # no gateway configured for this theater's channel: card is refused before anything is stored
    r = client.post(f"{base_url}/orders", headers=staff_headers, json=order_body([(p["id"], 1)], method="card"))
    body = expect_error("card without gateway", r, 400, "PAYMENT_METHOD_NOT_ALLOWED")
    assert body["acceptedMethods"] == ["cash"]

    r = client.post(f"{base_url}/orders", headers=staff_headers,
                    json=order_body([(p["id"], 1)], method="upi", source="offline-pos"))
    expect_error("offline upi", r, 400, "PAYMENT_METHOD_NOT_ALLOWED")

    r = client.post(f"{base_url}/orders", headers=staff_headers,
                    json=order_body([(p["id"], 1)], method="cash", source="offline_pos"))
    order = jprint("offline cash", r)["order"]
    assert order["source"] == "offline-pos"
    assert order["channel"] == "kiosk"

    stock = jprint("GET /stock", client.get(f"{base_url}/stock/{p['id']}", headers=staff_headers))
    assert stock["available"] == 4

def test_stale_client_total(client, base_url, staff_headers, make_product, order_body):
    p = make_product(price=100.0, stock=5)
    r = client.post(f"{base_url}/orders", headers=staff_headers,
                    json=order_body([(p["id"], 1)], clientTotal=100.0))
    body = expect_error("stale total", r, 409, "STALE_PRICING")
    assert body["serverTotal"] == 105.0
    assert body["pricing"]["tax"] == 5.0

    # within one paisa is accepted
    r = client.post(f"{base_url}/orders", headers=staff_headers,
                    json=order_body([(p["id"], 1)], clientTotal=105.01))
    assert r.status_code == 201, r.text

def test_offer_price_and_inclusive_gst(client, base_url, staff_headers, make_product, order_body):
    combo = make_product(name="Combo", price=220.0, offerPrice=199.0, gst_type="INCLUDE", category="Combos")
    cola = make_product(name="Cola", price=105.0, gst_type="INCLUDE", category="Beverages")

    r = client.post(f"{base_url}/orders", headers=staff_headers, json=order_body([(combo["id"], 1), (cola["id"], 1)]))
    order = jprint("POST /orders", r)["order"]
    assert order["pricing"]["total"] == 304.0
    assert order["items"][0]["unitPrice"] == 199.0
    assert order["pricing"]["total"] == round(order["pricing"]["subtotal"] + order["pricing"]["tax"], 2)

def test_discounted_order_reports_gross_net(client, base_url, staff_headers, make_product, order_body):
    p = make_product(price=100.0, discountPercentage=10.0)
    order = jprint("POST /orders", client.post(f"{base_url}/orders", headers=staff_headers,
                                               json=order_body([(p["id"], 2)])))["order"]
    pricing = order["pricing"]
    assert (pricing["grossNet"], pricing["totalDiscount"], pricing["subtotal"]) == (200.0, 20.0, 180.0)
    assert pricing["total"] == round(pricing["grossNet"] + pricing["tax"] - pricing["totalDiscount"], 2)
    assert pricing["cgst"] + pricing["sgst"] == pricing["tax"]


def _pending_order(client, base_url, headers, body, monkeypatch):
    """A counter order left PENDING (pay later), as if the cash step never ran."""
    from cinepos.services import lifecycle
    monkeypatch.setattr(lifecycle, "_settle_cash", lambda db, order, actor: None)
    r = client.post(f"{base_url}/orders", headers=headers, json=body)
    monkeypatch.undo()
    order = jprint("POST /orders (pending)", r)["order"]
    assert order["status"] == "PENDING"
    return order

def test_staff_operations(client, base_url, staff_headers, make_product, order_body, monkeypatch):
    p = make_product(stock=6)
    stock_url = f"{base_url}/stock/{p['id']}"

    # PENDING -> CONFIRMED -> PAID -> COMPLETED
    held = _pending_order(client, base_url, staff_headers, order_body([(p["id"], 2)]), monkeypatch)
    assert jprint("GET /stock", client.get(stock_url, headers=staff_headers))["reserved"] == 2
    confirmed = jprint("confirm", client.post(f"{base_url}/orders/{held['id']}/confirm", headers=staff_headers))
    assert confirmed["status"] == "CONFIRMED"
    paid = jprint("settle", client.post(f"{base_url}/orders/{held['id']}/settle", headers=staff_headers))
    assert paid["status"] == "PAID" and paid["payment"]["method"] == "cash"
    done = jprint("complete", client.post(f"{base_url}/orders/{held['id']}/complete", headers=staff_headers))
    assert done["status"] == "COMPLETED"
    expect_error("complete twice", client.post(f"{base_url}/orders/{held['id']}/complete", headers=staff_headers),
                 409, "CONFLICT")
    stock = jprint("GET /stock", client.get(stock_url, headers=staff_headers))
    assert (stock["available"], stock["reserved"], stock["committed"]) == (4, 0, 2)

    # cancelling an unpaid order gives the stock back
    held = _pending_order(client, base_url, staff_headers, order_body([(p["id"], 3)]), monkeypatch)
    cancelled = jprint("cancel pending", client.post(f"{base_url}/orders/{held['id']}/cancel", headers=staff_headers,
                                                      json={"reason": "changed mind"}))
    assert cancelled["status"] == "CANCELLED"
    assert cancelled["statusReason"] == "changed mind"
    stock = jprint("GET /stock", client.get(stock_url, headers=staff_headers))
    assert (stock["available"], stock["reserved"]) == (4, 0)

    # cancelling a paid cash order refunds it; sold stock stays sold
    r = client.post(f"{base_url}/orders", headers=staff_headers, json=order_body([(p["id"], 1)]))
    sold = jprint("POST /orders", r)["order"]
    refunded = jprint("cancel paid", client.post(f"{base_url}/orders/{sold['id']}/cancel", headers=staff_headers))
    assert refunded["status"] == "CANCELLED"
    assert refunded["payment"]["status"] == "REFUNDED"
    stock = jprint("GET /stock", client.get(stock_url, headers=staff_headers))
    assert (stock["available"], stock["committed"]) == (3, 3)
    expect_error("cancel twice", client.post(f"{base_url}/orders/{sold['id']}/cancel", headers=staff_headers),
                 409, "CONFLICT")

def test_order_list_filters_and_summary(client, base_url, auth_headers, staff_headers, make_product, order_body, theater_id, rng_suffix):
    p = make_product(price=50.0, stock=20)
    customer = f"Filter {rng_suffix}"
    ids = []
    for source in ("pos", "kiosk", "offline-pos"):
        r = client.post(f"{base_url}/orders", headers=staff_headers,
                        json=order_body([(p["id"], 1)], source=source, customerName=customer))
        ids.append(jprint(f"POST /orders ({source})", r)["order"]["id"])
    jprint("cancel", client.post(f"{base_url}/orders/{ids[1]}/cancel", headers=staff_headers))

    def listing(**params):
        r = client.get(f"{base_url}/orders", headers=auth_headers,
                       params={"theaterId": theater_id, "search": customer, **params})
        return jprint("GET /orders", r)

    everything = listing()
    assert everything["pagination"]["totalItems"] == 3
    assert everything["summary"]["totalOrders"] == 3
    assert everything["summary"]["totalRevenue"] == 105.0
    assert everything["summary"]["cancelledOrderAmount"] == 52.5
    assert {o["id"] for o in everything["items"]} == set(ids)

    assert listing(source="pos,offline-pos")["pagination"]["totalItems"] == 2
    assert listing(status="cancelled")["items"][0]["id"] == ids[1]
    assert listing(paymentMode="cash", limit=1)["pagination"]["totalPages"] == 3
    expect_error("bad status", client.get(f"{base_url}/orders", headers=auth_headers,
                                          params={"theaterId": theater_id, "status": "LOST"}), 422, "VALIDATION")

def test_other_theater_is_forbidden(client, base_url, auth_headers, staff_headers, make_product, order_body, rng_suffix):
    r = client.post(f"{base_url}/theaters", headers=auth_headers, json={"name": f"Other {rng_suffix}"})
    other = jprint("POST /theaters", r)["id"]
    r = client.post(f"{base_url}/orders", headers=staff_headers,
                    json=order_body([("x", 1)], theater=other))
    expect_error("foreign theater", r, 403, "FORBIDDEN")
    r = client.post(f"{base_url}/orders", json=order_body([("x", 1)], theater=other))
    expect_error("no token", r, 401, "AUTHENTICATION")

def test_paid_order_lands_in_print_queue(client, base_url, staff_headers, make_product, order_body, theater_id):
    food = make_product(name="Nachos", category="Food")
    drink = make_product(name="Cola", category="Beverages")
    r = client.post(f"{base_url}/orders", headers=staff_headers,
                    json=order_body([(food["id"], 1), (drink["id"], 2)], key=f"print-{uuid.uuid4()}"))
    order = jprint("POST /orders", r)["order"]

    jobs = jprint("GET /print/queue", client.get(f"{base_url}/print/queue", headers=staff_headers,
                                                 params={"theaterId": theater_id, "limit": 200}))
    mine = [j for j in jobs if j["orderId"] == order["id"]]
    kinds = sorted((j["kind"], j["category"]) for j in mine)
    assert kinds == [("category_docket", "Beverages"), ("category_docket", "Food"), ("gst_bill", None)]
    bill = next(j for j in mine if j["kind"] == "gst_bill")["bill"]
    assert bill["pricing"]["total"] == order["pricing"]["total"]
    assert bill["theater"]["name"] == "Galaxy Cinemas"
    docket = next(j for j in mine if j["category"] == "Beverages")["bill"]
    assert [it["quantity"] for it in docket["items"]] == [2]
    assert "pricing" not in docket

    for j in mine:
        ack = jprint("ack", client.post(f"{base_url}/print/jobs/{j['id']}/ack", headers=staff_headers))
        assert ack["firstPrint"] is True
    again = jprint("ack again", client.post(f"{base_url}/print/jobs/{mine[0]['id']}/ack", headers=staff_headers))
    assert again["firstPrint"] is False
    jobs = jprint("GET /print/queue", client.get(f"{base_url}/print/queue", headers=staff_headers,
                                                 params={"theaterId": theater_id, "limit": 200}))
    assert not [j for j in jobs if j["orderId"] == order["id"]]

def test_single_category_order_prints_bill_only(client, base_url, staff_headers, make_product, order_body, theater_id):
    nachos = make_product(name="Nachos", category="Food")
    samosa = make_product(name="Samosa", category="Food")
    r = client.post(f"{base_url}/orders", headers=staff_headers,
                    json=order_body([(nachos["id"], 1), (samosa["id"], 3)], key=f"print-{uuid.uuid4()}"))
    order = jprint("POST /orders", r)["order"]
    assert order["status"] == "PAID"

    jobs = jprint("GET /print/queue", client.get(f"{base_url}/print/queue", headers=staff_headers,
                                                 params={"theaterId": theater_id, "limit": 200}))
    mine = [(j["kind"], j["category"]) for j in jobs if j["orderId"] == order["id"]]
    assert mine == [("gst_bill", None)]

def test_sync_batch_and_pull(client, base_url, staff_headers, make_product, order_body, theater_id):
    p = make_product(stock=2)
    since = jprint("pull", client.get(f"{base_url}/sync/pull", headers=staff_headers,
                                      params={"theaterId": theater_id, "since": 10**9}))["next_since"]
    start = jprint("pull", client.get(f"{base_url}/sync/pull", headers=staff_headers,
                                      params={"theaterId": theater_id, "since": 0, "limit": 1000}))

    batch = [order_body([(p["id"], 1)], source="offline-pos") for _ in range(3)]
    out = jprint("POST /sync/orders", client.post(f"{base_url}/sync/orders", headers=staff_headers,
                                                  json={"orders": batch}))
    assert out["synced"] == 2
    assert [r["idempotencyKey"] for r in out["results"]] == [b["idempotencyKey"] for b in batch]
    assert [r["ok"] for r in out["results"]] == [True, True, False]
    assert out["results"][2]["error"] == "INSUFFICIENT_STOCK"

    # replaying the same batch creates nothing new
    again = jprint("POST /sync/orders", client.post(f"{base_url}/sync/orders", headers=staff_headers,
                                                    json={"orders": batch[:2]}))
    assert all(r["replayed"] for r in again["results"])
    assert [r["order"]["id"] for r in again["results"]] == [r["order"]["id"] for r in out["results"][:2]]

    pulled = jprint("pull", client.get(f"{base_url}/sync/pull", headers=staff_headers,
                                       params={"theaterId": theater_id, "since": start["next_since"]}))
    mine = [e for e in pulled["events"]
            if e["kind"].startswith("order.") and e["order"]["items"][0]["productId"] == p["id"]]
    assert [e["kind"] for e in mine] == ["order.created", "order.updated"] * 2
    assert since == 10**9
