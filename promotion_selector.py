"""
promotion_selector.py
=====================
Picks which stored promotions to evaluate for a cart, and in what order.

Selection modes (all scoped to one store, highest ``priority`` first):
  - active           : active flag set and inside the date window
  - applicable       : active, and accepted by the eligibility gate
  - auto-applicable  : active, auto-apply without a code, product-level types
                       only (cartTotal promotions always need a code), and
                       accepted by the eligibility gate

Stacking applies promotions one after another, folding each promotion's free
units into the cart before the next promotion is checked and evaluated, so
units made free once are never discounted again.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional

import promotion_engine
from schemas import (
    Cart,
    Promotion,
    PromotionType,
    RedemptionResult,
    RedemptionStatus,
    StackedResult,
)

logger = logging.getLogger(__name__)

AUTO_APPLY_TYPES = (PromotionType.buy_x_get_y, PromotionType.quantity_discount)


def _by_priority(promotions: Iterable[Promotion]) -> List[Promotion]:
    # sorted() is stable; ties keep their incoming order
    return sorted(promotions, key=lambda p: p.priority, reverse=True)


def _in_window(promotion: Promotion, now: datetime) -> bool:
    return promotion.is_active and promotion.start_date <= now <= promotion.end_date


def select_active(
    promotions: Iterable[Promotion], store_id: int, now: Optional[datetime] = None
) -> List[Promotion]:
    now = promotion_engine.current_time(now)
    return _by_priority(
        p for p in promotions if p.store_id == store_id and _in_window(p, now)
    )


def resolve_applicable_promotions(
    promotions: Iterable[Promotion],
    store_id: int,
    cart: Cart,
    user_id: str,
    now: Optional[datetime] = None,
) -> List[Promotion]:
    now = promotion_engine.current_time(now)
    return [
        p for p in select_active(promotions, store_id, now)
        if promotion_engine.can_apply(p, cart, user_id, now)
    ]


def select_auto_applicable(
    promotions: Iterable[Promotion],
    store_id: int,
    cart: Cart,
    user_id: str,
    now: Optional[datetime] = None,
) -> List[Promotion]:
    now = promotion_engine.current_time(now)
    return [
        p for p in select_active(promotions, store_id, now)
        if p.auto_apply
        and not p.requires_code
        and p.type in AUTO_APPLY_TYPES
        and promotion_engine.can_apply(p, cart, user_id, now)
    ]


def find_by_code(promotions: Iterable[Promotion], code: str, store_id: int) -> Optional[Promotion]:
    """Highest-priority active promotion of the store carrying ``code`` (case-insensitive)."""
    code = (code or "").strip().upper()
    if not code:
        return None
    matches = _by_priority(
        p for p in promotions
        if p.store_id == store_id and p.is_active and p.code and p.code.upper() == code
    )
    return matches[0] if matches else None


# ─────────────────────────── Redemption ───────────────────────────

def redeem_code(
    promotions: Iterable[Promotion],
    code: str,
    store_id: int,
    cart: Cart,
    user_id: str,
    now: Optional[datetime] = None,
) -> RedemptionResult:
    """
    Resolve ``code`` and apply it to ``cart``.

    Every failure is reported through the result status, never raised.
    """
    promotion = find_by_code(promotions, code, store_id)
    if promotion is None:
        logger.info("Promotion code %r not found in store %s", code, store_id)
        return RedemptionResult(status=RedemptionStatus.not_found)

    if not promotion_engine.can_apply(promotion, cart, user_id, now):
        return RedemptionResult(status=RedemptionStatus.not_eligible, promotion_id=promotion.id)

    summary = promotion_engine.apply_and_summarize(promotion, cart)
    if not summary.outcomes:
        return RedemptionResult(
            status=RedemptionStatus.no_applicable_discount,
            promotion_id=promotion.id,
            summary=summary,
        )
    return RedemptionResult(status=RedemptionStatus.applied, promotion_id=promotion.id, summary=summary)


# ─────────────────────────── Stacking ───────────────────────────

def apply_stacked(
    promotions: Iterable[Promotion],
    cart: Cart,
    user_id: str,
    now: Optional[datetime] = None,
) -> StackedResult:
    """
    Apply ``promotions`` in the given order against a progressively folded cart.

    Each promotion is re-checked by the eligibility gate against the cart as
    left by the promotions before it. Promotions that are ineligible or
    produce no outcomes are skipped.
    """
    now = promotion_engine.current_time(now)
    original_total = cart.chargeable_total
    current = cart
    applied = []
    monetary = 0.0

    for promotion in promotions:
        if not promotion_engine.can_apply(promotion, current, user_id, now):
            continue
        summary = promotion_engine.apply_and_summarize(promotion, current)
        if not summary.outcomes:
            continue
        applied.append(summary)
        monetary += sum(outcome.discount_amount for outcome in summary.outcomes)
        current = summary.cart

    final_total = max(0.0, current.chargeable_total - monetary)
    return StackedResult(
        applied=applied,
        total_discount=round(original_total - final_total, 2),
        original_total=round(original_total, 2),
        final_total=round(final_total, 2),
        cart=current,
    )
