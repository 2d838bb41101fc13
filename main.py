"""
main.py
=======
FastAPI application entry point.

Endpoints:
  POST   /categories                  - Create a category
  GET    /categories                  - List categories
  POST   /products                    - Create a product
  GET    /products                    - List products
  POST   /promotions                  - Create a promotion
  GET    /promotions                  - List promotions
  GET    /promotions/active           - Active promotions of a store
  POST   /promotions/applicable       - Promotions a cart/user may use
  POST   /promotions/auto-applicable  - Promotions applied without a code
  POST   /promotions/auto-apply       - Stack all auto-applicable promotions on a cart
  POST   /promotions/redeem           - Apply a promotion code to a cart
  GET    /promotions/{id}             - Get promotion by ID
  PUT    /promotions/{id}             - Update promotion
  DELETE /promotions/{id}             - Delete promotion
  POST   /promotions/{id}/apply       - Apply a specific promotion to a cart
  POST   /promotions/{id}/usage       - Record that a user redeemed a promotion
  GET    /promotions/{id}/usage       - Usage history of a promotion
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Depends, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

import models
import schemas
import promotion_engine
import promotion_selector
from config import configure_logging, settings
from database import engine, get_db

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

# Create DB tables on startup
models.Base.metadata.create_all(bind=engine)

app = FastAPI(
    title=settings.app_title,
    description="Promotion rule engine for a multi-store retail backend: buy-X-get-Y, "
                "quantity and cart-total discounts with eligibility checks and stacking.",
    version="1.0.0",
)


# ═══════════════════════════════════════════════════
#  HELPERS
# ═══════════════════════════════════════════════════

def _db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Datetimes are stored as naive UTC."""
    value = schemas.as_utc(value)
    return value.replace(tzinfo=None) if value is not None else None


def _category_refs(db: Session, ids: List[int]) -> List[schemas.CategoryRef]:
    if not ids:
        return []
    codes = {
        cat.id: cat.code
        for cat in db.query(models.Category).filter(models.Category.id.in_(ids)).all()
    }
    # Unknown ids stay unresolved and never match
    return [schemas.CategoryRef(id=cid, code=codes.get(cid)) for cid in ids]


def _to_engine(db: Session, promotion: models.Promotion) -> schemas.Promotion:
    return schemas.Promotion(
        id=promotion.id,
        name=promotion.name,
        code=promotion.code,
        store_id=promotion.store_id,
        type=promotion.type,
        rule=promotion.rule,
        applicable_products=promotion.applicable_products or [],
        applicable_categories=_category_refs(db, promotion.applicable_categories or []),
        excluded_products=promotion.excluded_products or [],
        excluded_categories=_category_refs(db, promotion.excluded_categories or []),
        start_date=promotion.start_date,
        end_date=promotion.end_date,
        is_active=promotion.is_active,
        max_usage=promotion.max_usage,
        current_usage=promotion.current_usage,
        max_usage_per_user=promotion.max_usage_per_user,
        priority=promotion.priority,
        auto_apply=promotion.auto_apply,
        requires_code=promotion.requires_code,
        min_order_amount=promotion.min_order_amount,
        usage_history=[
            schemas.UsageRecord(
                user_id=usage.user_id,
                order_id=usage.order_id,
                used_at=usage.used_at,
                discount_amount=usage.discount_amount,
            )
            for usage in promotion.usage_history
        ],
    )


def _store_promotions(db: Session, store_id: int) -> List[schemas.Promotion]:
    loaded = []
    for promotion in db.query(models.Promotion).filter(models.Promotion.store_id == store_id).all():
        try:
            loaded.append(_to_engine(db, promotion))
        except ValidationError as exc:
            # Malformed stored rule, skip it
            logger.warning("Skipping promotion %s: %s", promotion.id, exc)
    return loaded


def _resolve_cart(db: Session, cart: schemas.Cart) -> schemas.Cart:
    """Fill in missing category codes from the stored products."""
    missing = {
        item.product_id for item in cart.items
        if item.product_id is not None and not item.category_code
    }
    if not missing:
        return cart

    codes = {}
    products = db.query(models.Product).filter(models.Product.id.in_(missing)).all()
    for product in products:
        if product.category is not None:
            codes[product.id] = product.category.code

    items = []
    for item in cart.items:
        if item.product_id in codes and not item.category_code:
            item = item.model_copy(update={"category_code": codes[item.product_id]})
        items.append(item)
    return schemas.Cart(items=items)


def _get_promotion_or_404(db: Session, promotion_id: int) -> models.Promotion:
    promotion = db.query(models.Promotion).filter(models.Promotion.id == promotion_id).first()
    if not promotion:
        raise HTTPException(status_code=404, detail=f"Promotion with id={promotion_id} not found")
    return promotion


# ═══════════════════════════════════════════════════
#  CATEGORIES & PRODUCTS
# ═══════════════════════════════════════════════════

@app.post(
    "/categories",
    response_model=schemas.CategoryResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Catalog"],
    summary="Create a category",
)
def create_category(category: schemas.CategoryCreate, db: Session = Depends(get_db)):
    db_category = models.Category(code=category.code, name=category.name)
    db.add(db_category)
    db.commit()
    db.refresh(db_category)
    return db_category


@app.get("/categories", response_model=List[schemas.CategoryResponse], tags=["Catalog"])
def list_categories(db: Session = Depends(get_db)):
    return db.query(models.Category).all()


@app.post(
    "/products",
    response_model=schemas.ProductResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Catalog"],
    summary="Create a product",
)
def create_product(product: schemas.ProductCreate, db: Session = Depends(get_db)):
    if product.category_id is not None:
        exists = db.query(models.Category).filter(models.Category.id == product.category_id).first()
        if not exists:
            raise HTTPException(status_code=404, detail=f"Category with id={product.category_id} not found")
    db_product = models.Product(name=product.name, category_id=product.category_id)
    db.add(db_product)
    db.commit()
    db.refresh(db_product)
    return db_product


@app.get("/products", response_model=List[schemas.ProductResponse], tags=["Catalog"])
def list_products(db: Session = Depends(get_db)):
    return db.query(models.Product).all()


# ═══════════════════════════════════════════════════
#  PROMOTION CRUD
# ═══════════════════════════════════════════════════

@app.post(
    "/promotions",
    response_model=schemas.PromotionResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Promotions"],
    summary="Create a new promotion",
)
def create_promotion(promotion: schemas.PromotionCreate, db: Session = Depends(get_db)):
    """
    Create a new promotion. Supports three types:
    - **buyXGetY**: Every `buy_quantity` paid units earn `get_quantity` free units.
    - **quantityDiscount**: Fixed or percentage off once enough units are bought.
    - **cartTotal**: Fixed or percentage off once the applicable total is reached.
    """
    data = promotion.model_dump()
    data["type"] = promotion.type.value
    data["start_date"] = _db_time(promotion.start_date or datetime.now(timezone.utc))
    data["end_date"] = _db_time(promotion.end_date)

    db_promotion = models.Promotion(**data)
    db.add(db_promotion)
    db.commit()
    db.refresh(db_promotion)
    logger.info("Created %s promotion %s for store %s", db_promotion.type, db_promotion.id, db_promotion.store_id)
    return db_promotion


@app.get(
    "/promotions",
    response_model=List[schemas.PromotionResponse],
    tags=["Promotions"],
    summary="List promotions",
)
def list_promotions(
    store_id: Optional[int] = None,
    is_active: Optional[bool] = None,
    type: Optional[schemas.PromotionType] = None,
    db: Session = Depends(get_db),
):
    """Retrieve promotions (both active and inactive), highest priority first."""
    query = db.query(models.Promotion)
    if store_id is not None:
        query = query.filter(models.Promotion.store_id == store_id)
    if is_active is not None:
        query = query.filter(models.Promotion.is_active == is_active)
    if type is not None:
        query = query.filter(models.Promotion.type == type.value)
    return query.order_by(models.Promotion.priority.desc(), models.Promotion.id).all()


# ═══════════════════════════════════════════════════
#  PROMOTION SELECTION
# ═══════════════════════════════════════════════════

def _as_responses(db: Session, selected: List[schemas.Promotion]) -> List[models.Promotion]:
    rows = {
        row.id: row
        for row in db.query(models.Promotion)
        .filter(models.Promotion.id.in_([p.id for p in selected]))
        .all()
    }
    return [rows[p.id] for p in selected]


@app.get(
    "/promotions/active",
    response_model=List[schemas.PromotionResponse],
    tags=["Apply Promotions"],
    summary="Active promotions of a store",
)
def get_active_promotions(store_id: int, db: Session = Depends(get_db)):
    selected = promotion_selector.select_active(_store_promotions(db, store_id), store_id)
    return _as_responses(db, selected)


@app.post(
    "/promotions/applicable",
    response_model=List[schemas.PromotionResponse],
    tags=["Apply Promotions"],
    summary="Fetch all promotions the cart and user may use",
)
def get_applicable_promotions(request: schemas.StoreCartRequest, db: Session = Depends(get_db)):
    cart = _resolve_cart(db, request.cart)
    selected = promotion_selector.resolve_applicable_promotions(
        _store_promotions(db, request.store_id), request.store_id, cart, request.user_id
    )
    return _as_responses(db, selected)


@app.post(
    "/promotions/auto-applicable",
    response_model=List[schemas.PromotionResponse],
    tags=["Apply Promotions"],
    summary="Fetch promotions that apply without a code",
)
def get_auto_applicable_promotions(request: schemas.StoreCartRequest, db: Session = Depends(get_db)):
    cart = _resolve_cart(db, request.cart)
    selected = promotion_selector.select_auto_applicable(
        _store_promotions(db, request.store_id), request.store_id, cart, request.user_id
    )
    return _as_responses(db, selected)


@app.post(
    "/promotions/auto-apply",
    response_model=schemas.StackedResult,
    tags=["Apply Promotions"],
    summary="Apply every auto-applicable promotion to the cart, in priority order",
)
def auto_apply_promotions(request: schemas.StoreCartRequest, db: Session = Depends(get_db)):
    cart = _resolve_cart(db, request.cart)
    selected = promotion_selector.select_auto_applicable(
        _store_promotions(db, request.store_id), request.store_id, cart, request.user_id
    )
    return promotion_selector.apply_stacked(selected, cart, request.user_id)


@app.post(
    "/promotions/redeem",
    response_model=schemas.PromotionSummary,
    tags=["Apply Promotions"],
    summary="Apply a promotion code to the cart",
)
def redeem_promotion_code(request: schemas.RedeemRequest, db: Session = Depends(get_db)):
    cart = _resolve_cart(db, request.cart)
    result = promotion_selector.redeem_code(
        _store_promotions(db, request.store_id), request.code, request.store_id, cart, request.user_id
    )

    if result.status == schemas.RedemptionStatus.not_found:
        raise HTTPException(status_code=404, detail="Invalid promotion code")
    if result.status == schemas.RedemptionStatus.not_eligible:
        raise HTTPException(status_code=400, detail="Promotion cannot be applied to this cart")
    # no_applicable_discount still returns the summary, with no outcomes
    return result.summary


# ═══════════════════════════════════════════════════
#  SINGLE PROMOTION
# ═══════════════════════════════════════════════════

@app.get(
    "/promotions/{promotion_id}",
    response_model=schemas.PromotionResponse,
    tags=["Promotions"],
    summary="Get a promotion by ID",
)
def get_promotion(promotion_id: int, db: Session = Depends(get_db)):
    return _get_promotion_or_404(db, promotion_id)


@app.put(
    "/promotions/{promotion_id}",
    response_model=schemas.PromotionResponse,
    tags=["Promotions"],
    summary="Update a promotion",
)
def update_promotion(promotion_id: int, update_data: schemas.PromotionUpdate, db: Session = Depends(get_db)):
    """
    Update a specific promotion. All fields are optional; only provided, non-null fields are updated.
    A new rule or type is re-validated against the resulting type.
    """
    promotion = _get_promotion_or_404(db, promotion_id)
    changes = {k: v for k, v in update_data.model_dump(exclude_unset=True).items() if v is not None}

    if "type" in changes or "rule" in changes:
        new_type = changes.get("type", promotion.type)
        new_rule = changes.get("rule", promotion.rule)
        try:
            changes["rule"] = schemas.parse_rule(new_type, new_rule).model_dump()
        except schemas.InvalidRuleError as exc:
            raise HTTPException(status_code=422, detail=str(exc))
        changes["type"] = schemas.PromotionType(new_type).value

    for field in ("start_date", "end_date"):
        if field in changes:
            changes[field] = _db_time(changes[field])

    for field, value in changes.items():
        setattr(promotion, field, value)

    if promotion.end_date < promotion.start_date:
        db.rollback()
        raise HTTPException(status_code=422, detail="end_date must not be before start_date")

    db.commit()
    db.refresh(promotion)
    return promotion


@app.delete(
    "/promotions/{promotion_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Promotions"],
    summary="Delete a promotion",
)
def delete_promotion(promotion_id: int, db: Session = Depends(get_db)):
    promotion = _get_promotion_or_404(db, promotion_id)
    db.delete(promotion)
    db.commit()
    return None


@app.post(
    "/promotions/{promotion_id}/apply",
    response_model=schemas.PromotionSummary,
    tags=["Apply Promotions"],
    summary="Apply a specific promotion to the cart",
)
def apply_promotion(promotion_id: int, request: schemas.CartRequest, db: Session = Depends(get_db)):
    """
    Apply a specific promotion to the cart.

    Returns the discount outcomes, the original and final totals, and the
    cart with any granted free units folded into `free_quantity`.
    """
    promotion = _get_promotion_or_404(db, promotion_id)
    try:
        view = _to_engine(db, promotion)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=f"Could not apply promotion: {exc}")

    cart = _resolve_cart(db, request.cart)
    if not promotion_engine.can_apply(view, cart, request.user_id):
        raise HTTPException(status_code=400, detail="Promotion cannot be applied to this cart")

    summary = promotion_engine.apply_and_summarize(view, cart)
    if not summary.outcomes:
        raise HTTPException(status_code=400, detail="No discounts applicable for this cart")
    return summary


# ═══════════════════════════════════════════════════
#  USAGE
# ═══════════════════════════════════════════════════

@app.post(
    "/promotions/{promotion_id}/usage",
    response_model=schemas.UsageResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Usage"],
    summary="Record a redemption of a promotion",
)
def record_usage(promotion_id: int, usage: schemas.UsageCreate, db: Session = Depends(get_db)):
    """Appends to the usage history and bumps the usage counter in one transaction."""
    promotion = _get_promotion_or_404(db, promotion_id)
    db_usage = models.PromotionUsage(
        promotion_id=promotion.id,
        user_id=usage.user_id,
        order_id=usage.order_id,
        used_at=_db_time(usage.used_at or datetime.now(timezone.utc)),
        discount_amount=usage.discount_amount,
    )
    db.add(db_usage)
    promotion.current_usage = (promotion.current_usage or 0) + 1
    db.commit()
    db.refresh(db_usage)
    logger.info("Recorded usage of promotion %s by user %s", promotion.id, usage.user_id)
    return db_usage


@app.get(
    "/promotions/{promotion_id}/usage",
    response_model=List[schemas.UsageResponse],
    tags=["Usage"],
)
def list_usage(promotion_id: int, db: Session = Depends(get_db)):
    return _get_promotion_or_404(db, promotion_id).usage_history


# ═══════════════════════════════════════════════════
#  HEALTH CHECK
# ═══════════════════════════════════════════════════

@app.get("/", tags=["Health"], summary="Health check")
def root():
    return {"status": "ok", "message": "Promotions Engine API is running"}
