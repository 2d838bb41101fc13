"""
promotion_engine.py
===================
Core business logic for deciding whether a promotion applies to a cart and
what it is worth.

Implemented Cases:
------------------
1. buyXGetY:
   - For every applicable line, each full set of ``buy_quantity`` paid units
     earns ``get_quantity`` free units of that product.
   - The effect is expressed as free units, never as a monetary discount.
   - With ``same_item`` off and a ``free_item`` set, only that product's lines qualify.

2. quantityDiscount:
   - Sums the paid quantity of all applicable lines; once it reaches
     ``min_quantity`` a fixed amount or a percentage of the applicable lines'
     chargeable total is taken off, as one aggregate discount.

3. cartTotal:
   - Sums the chargeable amount of applicable lines; once it reaches
     ``min_amount`` a fixed amount or a percentage of that total is taken off.
   - ``free_item`` / ``free_shipping`` are passed through as advisory flags.

A fixed ``discount_amount`` always takes precedence over ``discount_percentage``.

Everything here is pure computation over pydantic snapshots: nothing is
written back to storage, and carts are never mutated in place.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from schemas import (
    BuyXGetYRule,
    Cart,
    CartLine,
    CartTotalRule,
    CategoryRef,
    DiscountOutcome,
    InvalidRuleError,
    Promotion,
    PromotionSummary,
    PromotionType,
    QuantityDiscountRule,
    as_utc,
)

logger = logging.getLogger(__name__)


def current_time(now: Optional[datetime] = None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    return as_utc(now)


def _category_matches(categories: List[CategoryRef], code: Optional[str]) -> bool:
    if not code:
        return False
    return any(cat.code is not None and cat.code == code for cat in categories)


# ─────────────────────────── Applicability ───────────────────────────

def is_applicable(promotion: Promotion, line: CartLine) -> bool:
    """
    Whether the product on ``line`` is in scope for ``promotion``.

    Exclusions are checked before inclusions, so a product that is both
    included and excluded is not applicable.
    """
    if line.product_id is None:
        return False

    if promotion.excluded_products and line.product_id in promotion.excluded_products:
        return False

    if promotion.excluded_categories and _category_matches(
        promotion.excluded_categories, line.category_code
    ):
        return False

    if not promotion.applicable_products and not promotion.applicable_categories:
        return True

    if line.product_id in promotion.applicable_products:
        return True
    return _category_matches(promotion.applicable_categories, line.category_code)


def _applicable_paid_lines(promotion: Promotion, cart: Cart) -> List[CartLine]:
    return [
        line for line in cart.items
        if line.paid_quantity > 0 and is_applicable(promotion, line)
    ]


# ─────────────────────────── Eligibility ───────────────────────────

def is_valid(promotion: Promotion, now: Optional[datetime] = None) -> bool:
    """Active flag, date window and global usage cap."""
    now = current_time(now)
    if not promotion.is_active:
        return False
    if not promotion.start_date <= now <= promotion.end_date:
        return False
    return promotion.max_usage == 0 or promotion.current_usage < promotion.max_usage


def user_usage_count(promotion: Promotion, user_id: str) -> int:
    return sum(1 for usage in promotion.usage_history if usage.user_id == str(user_id))


def can_apply(promotion: Promotion, cart: Cart, user_id: str, now: Optional[datetime] = None) -> bool:
    """
    Whether ``promotion`` may be applied to ``cart`` on behalf of ``user_id``.

    Checks run in a fixed order and stop at the first failure:
    validity, per-user usage cap, then the minimum order amount measured
    over the chargeable total of the whole cart.
    """
    if not is_valid(promotion, now):
        logger.debug("Promotion %s not valid", promotion.id)
        return False

    used = user_usage_count(promotion, user_id)
    if used >= promotion.max_usage_per_user:
        logger.debug(
            "Promotion %s: user %s reached usage limit (%d/%d)",
            promotion.id, user_id, used, promotion.max_usage_per_user,
        )
        return False

    cart_total = cart.chargeable_total
    if cart_total < promotion.min_order_amount:
        logger.debug(
            "Promotion %s: cart total %.2f below minimum %.2f",
            promotion.id, cart_total, promotion.min_order_amount,
        )
        return False

    return True


# ─────────────────────────── Discount amount ───────────────────────────

def _discount_value(base: float, percentage: Optional[float], amount: Optional[float]) -> float:
    if amount and amount > 0:
        return amount
    if percentage and percentage > 0:
        return base * percentage / 100
    return 0.0


# ─────────────────────────── Buy X Get Y ───────────────────────────

def evaluate_buy_x_get_y(promotion: Promotion, cart: Cart) -> List[DiscountOutcome]:
    """One outcome per qualifying line, granting free units of that line's product."""
    rule: BuyXGetYRule = promotion.rule
    if rule.buy_quantity <= 0 or rule.get_quantity <= 0:
        return []

    outcomes = []
    for line in _applicable_paid_lines(promotion, cart):
        if not rule.same_item and rule.free_item is not None and line.product_id != rule.free_item:
            continue

        sets = line.paid_quantity // rule.buy_quantity
        free_qty = sets * rule.get_quantity
        if free_qty <= 0:
            continue

        logger.debug(
            "Promotion %s: product %s paid=%d sets=%d free=%d",
            promotion.id, line.product_id, line.paid_quantity, sets, free_qty,
        )
        outcomes.append(DiscountOutcome(
            type=PromotionType.buy_x_get_y,
            product_id=line.product_id,
            original_quantity=line.quantity,
            free_quantity=free_qty,
            discount_amount=0.0,
        ))
    return outcomes


# ─────────────────────────── Quantity discount ───────────────────────────

def evaluate_quantity_discount(promotion: Promotion, cart: Cart) -> List[DiscountOutcome]:
    rule: QuantityDiscountRule = promotion.rule
    if rule.min_quantity <= 0:
        return []

    lines = _applicable_paid_lines(promotion, cart)
    total_qty = sum(line.paid_quantity for line in lines)
    if total_qty < rule.min_quantity:
        logger.debug(
            "Promotion %s: quantity %d below minimum %d",
            promotion.id, total_qty, rule.min_quantity,
        )
        return []

    applicable_total = sum(line.chargeable_amount for line in lines)
    discount = _discount_value(applicable_total, rule.discount_percentage, rule.discount_amount)
    if discount <= 0:
        return []

    if rule.discount_amount and rule.discount_amount > 0:
        off = f"${rule.discount_amount:g} off"
    else:
        off = f"{rule.discount_percentage:g}% off"
    return [DiscountOutcome(
        type=PromotionType.quantity_discount,
        discount_amount=discount,
        description=f"Quantity discount: {off} when buying {rule.min_quantity}+ items",
    )]


# ─────────────────────────── Cart total ───────────────────────────

def evaluate_cart_total(promotion: Promotion, cart: Cart) -> List[DiscountOutcome]:
    rule: CartTotalRule = promotion.rule
    if rule.min_amount < 0:
        return []

    applicable_total = sum(line.chargeable_amount for line in _applicable_paid_lines(promotion, cart))
    if applicable_total < rule.min_amount:
        logger.debug(
            "Promotion %s: applicable total %.2f below minimum %.2f",
            promotion.id, applicable_total, rule.min_amount,
        )
        return []

    discount = _discount_value(applicable_total, rule.discount_percentage, rule.discount_amount)
    if discount <= 0:
        return []

    return [DiscountOutcome(
        type=PromotionType.cart_total,
        cart_total=applicable_total,
        discount_amount=discount,
        free_item=rule.free_item,
        free_shipping=rule.free_shipping,
    )]


def evaluate(promotion: Promotion, cart: Cart) -> List[DiscountOutcome]:
    """Compute the outcomes ``promotion`` grants on ``cart``. Eligibility is not checked here."""
    if not cart.items:
        return []

    if promotion.type == PromotionType.buy_x_get_y:
        outcomes = evaluate_buy_x_get_y(promotion, cart)
    elif promotion.type == PromotionType.quantity_discount:
        outcomes = evaluate_quantity_discount(promotion, cart)
    elif promotion.type == PromotionType.cart_total:
        outcomes = evaluate_cart_total(promotion, cart)
    else:
        raise InvalidRuleError(f"Unknown promotion type: {promotion.type}")

    logger.debug("Promotion %s produced %d outcome(s)", promotion.id, len(outcomes))
    return outcomes


# ─────────────────────────── Aggregation ───────────────────────────

def apply_outcomes(cart: Cart, outcomes: List[DiscountOutcome]) -> Cart:
    """
    Return a new cart with granted free units folded into ``free_quantity``.

    Free units for a product are spread over that product's lines in cart
    order, never beyond a line's remaining paid quantity. Monetary outcomes
    leave the lines untouched. ``cart`` itself is not modified.
    """
    pending = {}
    for outcome in outcomes:
        if outcome.product_id is not None and outcome.free_quantity > 0:
            pending[outcome.product_id] = pending.get(outcome.product_id, 0) + outcome.free_quantity

    if not pending:
        return cart

    items = []
    for line in cart.items:
        grant = min(pending.get(line.product_id, 0), line.paid_quantity)
        if grant > 0:
            pending[line.product_id] -= grant
            line = line.model_copy(update={"free_quantity": line.free_quantity + grant})
        items.append(line)
    return Cart(items=items)


def summarize(promotion_id: int, cart: Cart, outcomes: List[DiscountOutcome]) -> PromotionSummary:
    original_total = cart.chargeable_total
    total_discount = sum(outcome.discount_amount for outcome in outcomes)
    final_total = max(0.0, original_total - total_discount)
    return PromotionSummary(
        promotion_id=promotion_id,
        outcomes=outcomes,
        total_discount=round(total_discount, 2),
        original_total=round(original_total, 2),
        final_total=round(final_total, 2),
        cart=apply_outcomes(cart, outcomes),
    )


def apply_and_summarize(promotion: Promotion, cart: Cart) -> PromotionSummary:
    return summarize(promotion.id, cart, evaluate(promotion, cart))
