from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from cinepos.db import get_db
from cinepos.config import settings
from cinepos.errors import Forbidden
from cinepos.util.security import hash_pw
from cinepos.models.core import Theater, User, Category, Product, GstType
from cinepos.services.inventory import ledger

router = APIRouter(prefix="/admin", tags=["admin"])

DEMO_PRODUCTS = [
    # name, category, base paise, offer paise, tax %, gst type, size
    ("Salted Popcorn", "Food", 10000, None, 5, GstType.EXCLUDE, "Regular"),
    ("Cheese Nachos", "Food", 15000, None, 5, GstType.EXCLUDE, None),
    ("Cola", "Beverages", 10500, None, 5, GstType.INCLUDE, "500 ml"),
    ("Popcorn + Cola Combo", "Combos", 22000, 19900, 5, GstType.INCLUDE, "Large"),
]

@router.post("/dev-bootstrap")
def dev_bootstrap(db: Session = Depends(get_db)):
    if settings.APP_ENV != "dev":
        raise Forbidden("Not allowed")

    # Theater
    t = db.query(Theater).filter(Theater.name == "Galaxy Cinemas").first()
    if not t:
        t = Theater(
            name="Galaxy Cinemas",
            phone="1800123456",
            gstin="27ABCDE1234F2Z5",
            address="Screen Street, Mumbai",
        )
        db.add(t); db.flush()

    # Super admin (sees every theater) and a counter staff user
    u = db.query(User).filter(User.mobile == "9999999999").first()
    if not u:
        u = User(theater_id=None, name="Admin", mobile="9999999999", pass_hash=hash_pw("admin"),
                 role="SUPER_ADMIN", active=True)
        db.add(u); db.flush()
    staff = db.query(User).filter(User.mobile == "8888888888").first()
    if not staff:
        staff = User(theater_id=t.id, name="Counter 1", mobile="8888888888", pass_hash=hash_pw("staff"),
                     role="STAFF", active=True)
        db.add(staff); db.flush()

    # Categories
    cats: dict[str, Category] = {}
    for pos, name in enumerate(("Food", "Beverages", "Combos")):
        c = db.query(Category).filter(Category.theater_id == t.id, Category.name == name).first()
        if not c:
            c = Category(theater_id=t.id, name=name, position=pos)
            db.add(c); db.flush()
        cats[name] = c

    # Products with opening stock
    products = {}
    for name, cat, base, offer, rate, gst, size in DEMO_PRODUCTS:
        p = db.query(Product).filter(Product.theater_id == t.id, Product.name == name).first()
        if not p:
            p = Product(theater_id=t.id, category_id=cats[cat].id, name=name, base_price=base,
                        offer_price=offer, tax_rate=rate, gst_type=gst, size_label=size, is_active=True)
            db.add(p); db.flush()
            ledger.ensure_stock(db, t.id, p.id, 100)
        products[name] = p.id

    db.commit()
    return {
        "theater_id": t.id,
        "admin_mobile": u.mobile,
        "admin_password": "admin",
        "staff_mobile": staff.mobile,
        "staff_password": "staff",
        "category_ids": {k: v.id for k, v in cats.items()},
        "product_ids": products,
    }
