"""
test_main.py
============
API tests for the Promotions Engine API.

Covers:
- CRUD operations for promotions
- Rule validation per promotion type at authoring time
- Category / product storage used for category-code resolution
- Applying a promotion: eligibility, outcomes, totals, free units
- Applicable, auto-applicable and stacked promotion selection
- Code redemption and usage recording
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from main import app, get_db

# ── SQLite file database for tests ──
TEST_DATABASE_URL = "sqlite:///./test_promotions.db"

test_engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def setup_db():
    """Create fresh tables before each test and drop them after."""
    Base.metadata.create_all(bind=test_engine)
    app.dependency_overrides[get_db] = override_get_db
    yield
    Base.metadata.drop_all(bind=test_engine)
    app.dependency_overrides.clear()


client = TestClient(app)


# ══════════════════════════════════════════════
#  Helper functions
# ══════════════════════════════════════════════

DEFAULT_RULES = {
    "buyXGetY": {"buy_quantity": 3, "get_quantity": 1},
    "quantityDiscount": {"min_quantity": 3, "discount_percentage": 10},
    "cartTotal": {"min_amount": 100, "discount_percentage": 10},
}


def days_from_now(days):
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


def create_promotion(type_="buyXGetY", rule=None, **fields):
    payload = {
        "name": f"{type_} promotion",
        "store_id": 1,
        "type": type_,
        "rule": rule if rule is not None else DEFAULT_RULES[type_],
        "start_date": days_from_now(-1),
        "end_date": days_from_now(30),
    }
    payload.update(fields)
    return client.post("/promotions", json=payload)


def cart_request(cart=None, user_id="u1", **extra):
    body = {"user_id": user_id, "cart": cart if cart is not None else SAMPLE_CART}
    body.update(extra)
    return body


SAMPLE_CART = {
    "items": [
        {"product_id": 1, "quantity": 6, "price": 50},
        {"product_id": 2, "quantity": 3, "price": 30},
        {"product_id": 3, "quantity": 2, "price": 25}
    ]
}


# ══════════════════════════════════════════════
#  CRUD Tests
# ══════════════════════════════════════════════

class TestPromotionCRUD:

    def test_create_buy_x_get_y_promotion(self):
        resp = create_promotion(code="bogo ")
        assert resp.status_code == 201
        body = resp.json()
        assert body["type"] == "buyXGetY"
        assert body["rule"]["buy_quantity"] == 3
        assert body["rule"]["same_item"] is True
        assert body["code"] == "BOGO"
        assert body["is_active"] is True
        assert body["max_usage"] == 0
        assert body["max_usage_per_user"] == 1
        assert body["priority"] == 1
        assert body["requires_code"] is True
        assert body["auto_apply"] is False
        assert body["current_usage"] == 0

    def test_create_cart_total_promotion(self):
        resp = create_promotion("cartTotal", {"min_amount": 0, "discount_amount": 5, "free_shipping": True})
        assert resp.status_code == 201
        assert resp.json()["rule"]["free_shipping"] is True

    def test_start_date_defaults_to_now(self):
        resp = client.post("/promotions", json={
            "name": "No start",
            "store_id": 1,
            "type": "cartTotal",
            "rule": {"min_amount": 0, "discount_amount": 5},
            "end_date": days_from_now(5),
        })
        assert resp.status_code == 201
        assert resp.json()["start_date"] is not None

    def test_get_all_promotions_sorted_by_priority(self):
        create_promotion(priority=1)
        create_promotion("cartTotal", priority=9)
        resp = client.get("/promotions")
        assert resp.status_code == 200
        assert [p["priority"] for p in resp.json()] == [9, 1]

    def test_filter_promotions(self):
        create_promotion()
        create_promotion("cartTotal", store_id=2)
        assert len(client.get("/promotions", params={"store_id": 2}).json()) == 1
        assert len(client.get("/promotions", params={"type": "buyXGetY"}).json()) == 1

    def test_get_promotion_by_id(self):
        created = create_promotion().json()
        resp = client.get(f"/promotions/{created['id']}")
        assert resp.status_code == 200
        assert resp.json()["id"] == created["id"]

    def test_get_promotion_not_found(self):
        resp = client.get("/promotions/9999")
        assert resp.status_code == 404

    def test_update_promotion(self):
        created = create_promotion().json()
        resp = client.put(f"/promotions/{created['id']}", json={"is_active": False, "priority": 4})
        assert resp.status_code == 200
        assert resp.json()["is_active"] is False
        assert resp.json()["priority"] == 4

    def test_update_ignores_null_fields(self):
        created = create_promotion(name="Keep me", applicable_products=[1]).json()
        for body in ({"name": None}, {"is_active": None}, {"applicable_products": None}):
            resp = client.put(f"/promotions/{created['id']}", json=body)
            assert resp.status_code == 200
        data = client.get(f"/promotions/{created['id']}").json()
        assert data["name"] == "Keep me"
        assert data["is_active"] is True
        assert data["applicable_products"] == [1]

    def test_update_type_and_rule(self):
        created = create_promotion().json()
        resp = client.put(f"/promotions/{created['id']}", json={
            "type": "quantityDiscount",
            "rule": {"min_quantity": 2, "discount_amount": 3},
        })
        assert resp.status_code == 200
        assert resp.json()["type"] == "quantityDiscount"
        assert resp.json()["rule"]["min_quantity"] == 2

    def test_update_type_without_matching_rule(self):
        created = create_promotion().json()
        resp = client.put(f"/promotions/{created['id']}", json={"type": "cartTotal"})
        assert resp.status_code == 422

    def test_update_invalid_rule(self):
        created = create_promotion().json()
        resp = client.put(f"/promotions/{created['id']}", json={"rule": {"buy_quantity": 0, "get_quantity": 1}})
        assert resp.status_code == 422

    def test_delete_promotion(self):
        created = create_promotion().json()
        resp = client.delete(f"/promotions/{created['id']}")
        assert resp.status_code == 204
        resp = client.get(f"/promotions/{created['id']}")
        assert resp.status_code == 404

    def test_delete_promotion_not_found(self):
        resp = client.delete("/promotions/9999")
        assert resp.status_code == 404


# ══════════════════════════════════════════════
#  Validation Tests
# ══════════════════════════════════════════════

class TestValidation:

    def test_invalid_promotion_type(self):
        resp = create_promotion("super-sale", rule={})
        assert resp.status_code == 422

    def test_buy_x_get_y_missing_buy_quantity(self):
        resp = create_promotion("buyXGetY", {"get_quantity": 1})
        assert resp.status_code == 422

    def test_quantity_discount_percentage_over_100(self):
        resp = create_promotion("quantityDiscount", {"min_quantity": 1, "discount_percentage": 110})
        assert resp.status_code == 422

    def test_quantity_discount_without_discount(self):
        resp = create_promotion("quantityDiscount", {"min_quantity": 2})
        assert resp.status_code == 422

    def test_cart_total_free_shipping_only(self):
        resp = create_promotion("cartTotal", {"min_amount": 10, "discount_percentage": 0, "free_shipping": True})
        assert resp.status_code == 201
        assert resp.json()["rule"]["free_shipping"] is True

    def test_rule_of_wrong_type(self):
        resp = create_promotion("cartTotal", {"buy_quantity": 2, "get_quantity": 1})
        assert resp.status_code == 422

    def test_end_before_start(self):
        resp = create_promotion(start_date=days_from_now(5), end_date=days_from_now(1))
        assert resp.status_code == 422

    def test_negative_min_order_amount(self):
        resp = create_promotion(min_order_amount=-1)
        assert resp.status_code == 422

    def test_free_quantity_above_quantity_in_cart(self):
        created = create_promotion().json()
        bad_cart = {"items": [{"product_id": 1, "quantity": 1, "price": 5, "free_quantity": 2}]}
        resp = client.post(f"/promotions/{created['id']}/apply", json=cart_request(bad_cart))
        assert resp.status_code == 422


# ══════════════════════════════════════════════
#  Catalog Tests
# ══════════════════════════════════════════════

class TestCatalog:

    def test_create_category_and_product(self):
        category = client.post("/categories", json={"code": "SHOES", "name": "Shoes"})
        assert category.status_code == 201
        product = client.post("/products", json={"name": "Runner", "category_id": category.json()["id"]})
        assert product.status_code == 201
        assert product.json()["category_id"] == category.json()["id"]
        assert len(client.get("/products").json()) == 1
        assert client.get("/categories").json()[0]["code"] == "SHOES"

    def test_product_with_unknown_category(self):
        resp = client.post("/products", json={"name": "Ghost", "category_id": 404})
        assert resp.status_code == 404


# ══════════════════════════════════════════════
#  Apply Promotion Tests
# ══════════════════════════════════════════════

class TestApplyPromotion:

    def test_apply_cart_total_promotion(self):
        """10% off on 440 = 44 discount, final = 396"""
        created = create_promotion("cartTotal").json()
        resp = client.post(f"/promotions/{created['id']}/apply", json=cart_request())
        assert resp.status_code == 200
        body = resp.json()
        assert body["original_total"] == 440.0
        assert body["total_discount"] == 44.0
        assert body["final_total"] == 396.0
        assert body["outcomes"][0]["type"] == "cartTotal"
        assert body["outcomes"][0]["cart_total"] == 440.0

    def test_apply_buy_x_get_y_promotion(self):
        """Buy 3 get 1: product 1 (6 units) gets 2 free, product 2 (3 units) gets 1 free."""
        created = create_promotion().json()
        resp = client.post(f"/promotions/{created['id']}/apply", json=cart_request())
        assert resp.status_code == 200
        body = resp.json()
        assert body["total_discount"] == 0
        assert body["final_total"] == 440.0
        free = {o["product_id"]: o["free_quantity"] for o in body["outcomes"]}
        assert free == {1: 2, 2: 1}
        assert [i["free_quantity"] for i in body["cart"]["items"]] == [2, 1, 0]
        assert body["cart"]["chargeable_total"] == 310.0

    def test_apply_quantity_discount_with_fixed_amount(self):
        created = create_promotion("quantityDiscount", {"min_quantity": 10, "discount_amount": 15}).json()
        resp = client.post(f"/promotions/{created['id']}/apply", json=cart_request())
        assert resp.status_code == 200
        assert resp.json()["total_discount"] == 15.0
        assert resp.json()["final_total"] == 425.0

    def test_discount_larger_than_cart(self):
        created = create_promotion("cartTotal", {"min_amount": 0, "discount_amount": 1000}).json()
        resp = client.post(f"/promotions/{created['id']}/apply", json=cart_request())
        assert resp.status_code == 200
        assert resp.json()["final_total"] == 0

    def test_apply_promotion_not_found(self):
        resp = client.post("/promotions/9999/apply", json=cart_request())
        assert resp.status_code == 404

    def test_apply_inactive_promotion(self):
        created = create_promotion("cartTotal").json()
        client.put(f"/promotions/{created['id']}", json={"is_active": False})
        resp = client.post(f"/promotions/{created['id']}/apply", json=cart_request())
        assert resp.status_code == 400
        assert "cannot be applied" in resp.json()["detail"]

    def test_apply_expired_promotion(self):
        created = create_promotion(
            "cartTotal", start_date=days_from_now(-10), end_date=days_from_now(-1)
        ).json()
        resp = client.post(f"/promotions/{created['id']}/apply", json=cart_request())
        assert resp.status_code == 400

    def test_apply_below_min_order_amount(self):
        created = create_promotion("cartTotal", min_order_amount=500).json()
        resp = client.post(f"/promotions/{created['id']}/apply", json=cart_request())
        assert resp.status_code == 400

    def test_apply_conditions_not_met(self):
        """Cart total is 440 but the rule needs 500."""
        created = create_promotion("cartTotal", {"min_amount": 500, "discount_percentage": 10}).json()
        resp = client.post(f"/promotions/{created['id']}/apply", json=cart_request())
        assert resp.status_code == 400
        assert "no discounts" in resp.json()["detail"].lower()

    def test_category_code_resolved_from_stored_product(self):
        category = client.post("/categories", json={"code": "SHOES", "name": "Shoes"}).json()
        product = client.post("/products", json={"name": "Runner", "category_id": category["id"]}).json()
        created = create_promotion(
            "cartTotal",
            {"min_amount": 0, "discount_percentage": 10},
            applicable_categories=[category["id"]],
        ).json()
        cart = {"items": [
            {"product_id": product["id"], "quantity": 2, "price": 50},
            {"product_id": 999, "quantity": 1, "price": 100},
        ]}
        resp = client.post(f"/promotions/{created['id']}/apply", json=cart_request(cart))
        assert resp.status_code == 200
        assert resp.json()["total_discount"] == 10.0
        assert resp.json()["final_total"] == 190.0

    def test_unknown_category_never_matches(self):
        created = create_promotion(
            "cartTotal",
            {"min_amount": 0, "discount_percentage": 10},
            applicable_categories=[12345],
        ).json()
        resp = client.post(f"/promotions/{created['id']}/apply", json=cart_request())
        assert resp.status_code == 400

    def test_excluded_product(self):
        created = create_promotion("cartTotal", {"min_amount": 0, "discount_percentage": 10},
                                   excluded_products=[1]).json()
        resp = client.post(f"/promotions/{created['id']}/apply", json=cart_request())
        assert resp.status_code == 200
        # 10% of (3*30 + 2*25) = 14
        assert resp.json()["total_discount"] == 14.0


# ══════════════════════════════════════════════
#  Selection Tests
# ══════════════════════════════════════════════

class TestSelection:

    def test_active_promotions(self):
        create_promotion(priority=1)
        create_promotion("cartTotal", priority=5)
        create_promotion(is_active=False)
        create_promotion(store_id=2)
        create_promotion(start_date=days_from_now(-10), end_date=days_from_now(-1))
        resp = client.get("/promotions/active", params={"store_id": 1})
        assert resp.status_code == 200
        assert [p["priority"] for p in resp.json()] == [5, 1]

    def test_applicable_promotions(self):
        eligible = create_promotion("cartTotal").json()
        create_promotion("cartTotal", min_order_amount=1000)
        resp = client.post("/promotions/applicable", json=cart_request(store_id=1))
        assert resp.status_code == 200
        assert [p["id"] for p in resp.json()] == [eligible["id"]]

    def test_auto_applicable_excludes_cart_total(self):
        bogo = create_promotion(auto_apply=True, requires_code=False).json()
        create_promotion("cartTotal", auto_apply=True, requires_code=False)
        create_promotion("quantityDiscount", auto_apply=True, requires_code=True)
        resp = client.post("/promotions/auto-applicable", json=cart_request(store_id=1))
        assert resp.status_code == 200
        assert [p["id"] for p in resp.json()] == [bogo["id"]]

    def test_auto_apply_stacks_in_priority_order(self):
        """
        Buy 3 get 1 first: 3 units free, chargeable 440 -> 310.
        10% quantity discount then applies to the remaining 310 => 31.
        """
        create_promotion(auto_apply=True, requires_code=False, priority=5)
        create_promotion("quantityDiscount", auto_apply=True, requires_code=False, priority=1)
        resp = client.post("/promotions/auto-apply", json=cart_request(store_id=1))
        assert resp.status_code == 200
        body = resp.json()
        assert [s["outcomes"][0]["type"] for s in body["applied"]] == ["buyXGetY", "quantityDiscount"]
        assert body["original_total"] == 440.0
        assert body["final_total"] == 279.0
        assert body["total_discount"] == 161.0
        assert body["cart"]["chargeable_total"] == 310.0

    def test_auto_apply_with_nothing_to_apply(self):
        resp = client.post("/promotions/auto-apply", json=cart_request(store_id=1))
        assert resp.status_code == 200
        assert resp.json()["applied"] == []
        assert resp.json()["final_total"] == 440.0


# ══════════════════════════════════════════════
#  Redemption & Usage Tests
# ══════════════════════════════════════════════

class TestRedemption:

    def test_redeem_code(self):
        create_promotion("cartTotal", code="save10")
        resp = client.post("/promotions/redeem", json=cart_request(store_id=1, code="SAVE10"))
        assert resp.status_code == 200
        assert resp.json()["total_discount"] == 44.0

    def test_redeem_unknown_code(self):
        resp = client.post("/promotions/redeem", json=cart_request(store_id=1, code="NOPE"))
        assert resp.status_code == 404

    def test_redeem_code_of_other_store(self):
        create_promotion("cartTotal", code="SAVE10", store_id=2)
        resp = client.post("/promotions/redeem", json=cart_request(store_id=1, code="SAVE10"))
        assert resp.status_code == 404

    def test_redeem_without_discount(self):
        create_promotion("cartTotal", {"min_amount": 1000, "discount_amount": 5}, code="BIG")
        resp = client.post("/promotions/redeem", json=cart_request(store_id=1, code="BIG"))
        assert resp.status_code == 200
        assert resp.json()["outcomes"] == []
        assert resp.json()["total_discount"] == 0
        assert resp.json()["final_total"] == resp.json()["original_total"] == 440

    def test_redeem_after_user_limit_reached(self):
        created = create_promotion("cartTotal", code="ONCE").json()
        usage = client.post(f"/promotions/{created['id']}/usage", json={
            "user_id": "u1", "order_id": "order-1", "discount_amount": 44,
        })
        assert usage.status_code == 201

        resp = client.post("/promotions/redeem", json=cart_request(store_id=1, code="ONCE"))
        assert resp.status_code == 400
        assert "cannot be applied" in resp.json()["detail"]

        other_user = client.post("/promotions/redeem", json=cart_request(user_id="u2", store_id=1, code="ONCE"))
        assert other_user.status_code == 200

    def test_record_usage_updates_counter(self):
        created = create_promotion(max_usage=1).json()
        client.post(f"/promotions/{created['id']}/usage", json={"user_id": "u9"})
        promo = client.get(f"/promotions/{created['id']}").json()
        assert promo["current_usage"] == 1

        history = client.get(f"/promotions/{created['id']}/usage").json()
        assert len(history) == 1
        assert history[0]["user_id"] == "u9"

        # Global cap reached: no one else may use it
        resp = client.post(f"/promotions/{created['id']}/apply", json=cart_request(user_id="u1"))
        assert resp.status_code == 400

    def test_record_usage_promotion_not_found(self):
        resp = client.post("/promotions/9999/usage", json={"user_id": "u1"})
        assert resp.status_code == 404


# ══════════════════════════════════════════════
#  Health
# ══════════════════════════════════════════════

def test_health_check():
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
