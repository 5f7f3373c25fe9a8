# conftest.py
import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="cinepos-test-")
os.environ.setdefault("DB_URL", f"sqlite:///{os.path.join(_DB_DIR, 'cinepos.db')}")
os.environ["APP_ENV"] = "dev"
os.environ["SWEEPER_ENABLED"] = "false"
os.environ.setdefault("LOG_LEVEL", "WARNING")

import uuid

import pytest
from fastapi.testclient import TestClient

from cinepos.main import app
from cinepos.db import SessionLocal


@pytest.fixture(scope="session")
def base_url():
    return "http://testserver"

@pytest.fixture(scope="session")
def client():
    with TestClient(app) as c:
        yield c

@pytest.fixture(scope="session")
def boot(client, base_url):
    # ensure app is up
    r = client.get(f"{base_url}/healthz")
    assert r.status_code == 200, f"/healthz failed: {r.text}"

    # seed dev data
    r = client.post(f"{base_url}/admin/dev-bootstrap")
    assert r.status_code == 200, f"/admin/dev-bootstrap failed: {r.text}"
    return r.json()

def _login(client, base_url, mobile, password):
    r = client.post(f"{base_url}/auth/login", params={"mobile": mobile, "password": password})
    assert r.status_code == 200, f"/auth/login failed: {r.text}"
    return r.json()["access_token"]

@pytest.fixture(scope="session")
def admin_token(client, base_url, boot):
    return _login(client, base_url, boot["admin_mobile"], boot["admin_password"])

@pytest.fixture(scope="session")
def auth_headers(admin_token):
    return {"Authorization": f"Bearer {admin_token}"}

@pytest.fixture(scope="session")
def staff_headers(client, base_url, boot):
    tok = _login(client, base_url, boot["staff_mobile"], boot["staff_password"])
    return {"Authorization": f"Bearer {tok}"}

@pytest.fixture(scope="session")
def theater_id(boot):
    return boot["theater_id"]

@pytest.fixture
def rng_suffix():
    import random, string
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=6))

@pytest.fixture
def db():
    s = SessionLocal()
    try:
        yield s
    finally:
        s.close()

@pytest.fixture
def make_product(client, base_url, auth_headers, boot, rng_suffix):
    """Create a product with its own stock so tests don't share counters."""
    def _make(name="Popcorn", price=100.0, stock=10, tax_rate=5.0, gst_type="EXCLUDE",
              category="Food", theater=None, **extra):
        theater = theater or boot["theater_id"]
        body = {
            "theaterId": theater,
            "name": f"{name}-{rng_suffix}-{uuid.uuid4().hex[:4]}",
            "basePrice": price,
            "taxRate": tax_rate,
            "gstType": gst_type,
            "initialStock": stock,
            **extra,
        }
        if category and theater == boot["theater_id"]:
            body["categoryId"] = boot["category_ids"][category]
        r = client.post(f"{base_url}/products", headers=auth_headers, json=body)
        assert r.status_code == 201, f"POST /products -> {r.status_code}: {r.text}"
        return r.json()
    return _make

@pytest.fixture
def order_body(boot):
    def _body(items, method="cash", source="pos", key=None, theater=None, **extra):
        return {
            "theaterId": theater or boot["theater_id"],
            "items": [{"productId": pid, "quantity": qty} for pid, qty in items],
            "customerName": "Walk-in",
            "paymentMethod": method,
            "source": source,
            "idempotencyKey": key or str(uuid.uuid4()),
            **extra,
        }
    return _body
