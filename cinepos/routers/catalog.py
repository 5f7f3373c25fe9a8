from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List

from cinepos.db import get_db
from cinepos.deps import ADMIN_ROLES, current_user, require_role, require_theater_access
from cinepos.errors import NotFound, ValidationFailed
from cinepos.models.core import Category, GstType, Product, ProductStock, Theater, User
from cinepos.schemas.catalog import CategoryIn, ProductIn, ProductPatch, RestockIn, TheaterIn
from cinepos.services.inventory import ledger
from cinepos.services.order_store import _iso
from cinepos.services.pricing import rupees, to_paise
from cinepos.util.audit import audit

router = APIRouter(tags=["catalog"])


# ---------- helpers ----------

def _theater_out(t: Theater) -> dict:
    return {
        "id": t.id, "name": t.name, "gstin": t.gstin, "address": t.address, "phone": t.phone,
        "isActive": t.is_active, "receiptFooter": t.receipt_footer,
    }

def _stock_out(s: ProductStock | None) -> dict | None:
    if s is None:
        return None
    return {
        "productId": s.product_id, "initial": s.initial, "available": s.available,
        "reserved": s.reserved, "committed": s.committed, "restocked": s.restocked,
        "version": s.version,
    }

def _product_out(p: Product, stock: ProductStock | None) -> dict:
    # the POS grid reads one image url and one effective price; no fallbacks on the client
    return {
        "id": p.id,
        "theaterId": p.theater_id,
        "categoryId": p.category_id,
        "category": p.category.name if p.category else None,
        "name": p.name,
        "imageUrl": p.image_url,
        "basePrice": rupees(p.base_price),
        "offerPrice": rupees(p.offer_price) if p.offer_price is not None else None,
        "taxRate": float(p.tax_rate or 0),
        "gstType": p.gst_type.value,
        "discountPercentage": float(p.discount_percentage or 0),
        "size": p.size_label,
        "isActive": p.is_active,
        "minStock": p.min_stock,
        "available": stock.available if stock else 0,
        "updatedAt": _iso(p.updated_at),
    }


# ---------- theaters ----------

@router.post("/theaters", status_code=201)
def create_theater(body: TheaterIn, db: Session = Depends(get_db), user: User = Depends(require_role("SUPER_ADMIN"))):
    t = Theater(name=body.name, gstin=body.gstin, address=body.address, phone=body.phone)
    if body.receipt_footer:
        t.receipt_footer = body.receipt_footer
    db.add(t); db.flush()
    audit(db, user.id, "Theater", t.id, "CREATE", after=body.name)
    db.commit(); db.refresh(t)
    return _theater_out(t)

@router.get("/theaters/{theater_id}")
def get_theater(theater_id: str, db: Session = Depends(get_db), user: User = Depends(current_user)):
    require_theater_access(user, theater_id)
    t = db.get(Theater, theater_id)
    if not t:
        raise NotFound("theater not found")
    return _theater_out(t)


# ---------- categories ----------

@router.post("/categories", status_code=201)
def create_category(body: CategoryIn, db: Session = Depends(get_db), user: User = Depends(require_role(*ADMIN_ROLES))):
    require_theater_access(user, body.theater_id)
    c = Category(theater_id=body.theater_id, name=body.name, position=body.position)
    db.add(c); db.commit(); db.refresh(c)
    return {"id": c.id, "theaterId": c.theater_id, "name": c.name, "position": c.position}

@router.get("/categories")
def list_categories(theater_id: str = Query(alias="theaterId"),
                    db: Session = Depends(get_db), user: User = Depends(current_user)):
    require_theater_access(user, theater_id)
    rows: List[Category] = (db.query(Category).filter(Category.theater_id == theater_id)
                              .order_by(Category.position, Category.name).all())
    return [{"id": c.id, "theaterId": c.theater_id, "name": c.name, "position": c.position} for c in rows]


# ---------- products ----------

@router.post("/products", status_code=201)
def create_product(body: ProductIn, db: Session = Depends(get_db), user: User = Depends(require_role(*ADMIN_ROLES))):
    require_theater_access(user, body.theater_id)
    if body.category_id:
        c = db.get(Category, body.category_id)
        if not c or c.theater_id != body.theater_id:
            raise ValidationFailed("category does not belong to this theater")
    p = Product(
        theater_id=body.theater_id,
        category_id=body.category_id,
        name=body.name,
        image_url=body.image_url,
        base_price=to_paise(body.base_price),
        offer_price=to_paise(body.offer_price) if body.offer_price is not None else None,
        tax_rate=body.tax_rate,
        gst_type=GstType(body.gst_type),
        discount_percentage=body.discount_percentage,
        size_label=body.size_label,
        is_active=body.is_active,
        min_stock=body.min_stock,
    )
    db.add(p); db.flush()
    stock = ledger.ensure_stock(db, p.theater_id, p.id, body.initial_stock)
    audit(db, user.id, "Product", p.id, "CREATE", after={"name": p.name, "initialStock": body.initial_stock})
    db.commit(); db.refresh(p)
    return _product_out(p, stock)

@router.get("/products")
def list_products(theater_id: str = Query(alias="theaterId"), active_only: bool = Query(default=False, alias="activeOnly"),
                  db: Session = Depends(get_db), user: User = Depends(current_user)):
    require_theater_access(user, theater_id)
    q = db.query(Product).filter(Product.theater_id == theater_id)
    if active_only:
        q = q.filter(Product.is_active.is_(True))
    rows: List[Product] = q.order_by(Product.name).all()
    stocks = {s.product_id: s for s in db.query(ProductStock).filter(ProductStock.theater_id == theater_id).all()}
    return [_product_out(p, stocks.get(p.id)) for p in rows]

@router.patch("/products/{product_id}")
def update_product(product_id: str, body: ProductPatch,
                   db: Session = Depends(get_db), user: User = Depends(require_role(*ADMIN_ROLES))):
    p = db.get(Product, product_id)
    if not p:
        raise NotFound("product not found")
    require_theater_access(user, p.theater_id)
    data = body.model_dump(exclude_unset=True)
    for k in ("base_price", "offer_price"):
        if k in data and data[k] is not None:
            data[k] = to_paise(data[k])
    for k, v in data.items():
        setattr(p, k, v)
    p.version = (p.version or 1) + 1
    audit(db, user.id, "Product", p.id, "UPDATE", after={k: str(v) for k, v in data.items()})
    db.commit(); db.refresh(p)
    return _product_out(p, db.get(ProductStock, p.id))


# ---------- stock ----------

@router.get("/stock/low")
def low_stock(theater_id: str = Query(alias="theaterId"), db: Session = Depends(get_db), user: User = Depends(current_user)):
    require_theater_access(user, theater_id)
    return [
        {**_stock_out(s), "name": p.name, "threshold": ledger.threshold_for(p)}
        for s, p in ledger.low_stock(db, theater_id)
    ]

@router.get("/stock/{product_id}")
def get_stock(product_id: str, db: Session = Depends(get_db), user: User = Depends(current_user)):
    s = db.get(ProductStock, product_id)
    if not s:
        raise NotFound("no stock row for product")
    require_theater_access(user, s.theater_id)
    return _stock_out(s)

@router.post("/stock/{product_id}/restock")
def restock(product_id: str, body: RestockIn, db: Session = Depends(get_db), user: User = Depends(require_role(*ADMIN_ROLES))):
    s = db.get(ProductStock, product_id)
    if not s:
        raise NotFound("no stock row for product")
    require_theater_access(user, s.theater_id)
    s = ledger.restock(db, product_id, body.quantity)
    audit(db, user.id, "ProductStock", product_id, "RESTOCK", after=str(body.quantity))
    db.commit()
    return _stock_out(s)
