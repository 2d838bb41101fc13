from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Category(Base):
    """Product category. ``code`` is what promotions match against."""
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    code = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String, nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=True)

    category = relationship("Category")


class Promotion(Base):
    """
    Database model for promotions.

    type: 'buyXGetY' | 'quantityDiscount' | 'cartTotal'
    rule: JSON field storing the rule payload for ``type``.
        - buyXGetY:         { "buy_quantity": <int>, "get_quantity": <int>,
                              "same_item": <bool>, "free_item": <int|null> }
        - quantityDiscount: { "min_quantity": <int>, "discount_percentage": <float|null>,
                              "discount_amount": <float|null> }
        - cartTotal:        { "min_amount": <float>, "discount_percentage": <float|null>,
                              "discount_amount": <float|null>, "free_item": <int|null>,
                              "free_shipping": <bool> }
    applicable_*/excluded_*: JSON lists of product / category ids.
    """
    __tablename__ = "promotions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    code = Column(String, nullable=True, index=True)
    store_id = Column(Integer, nullable=False, index=True)
    type = Column(String, nullable=False)
    rule = Column(JSON, nullable=False)

    applicable_products = Column(JSON, nullable=False, default=list)
    applicable_categories = Column(JSON, nullable=False, default=list)
    excluded_products = Column(JSON, nullable=False, default=list)
    excluded_categories = Column(JSON, nullable=False, default=list)

    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    max_usage = Column(Integer, default=0, nullable=False)  # 0 = unlimited
    current_usage = Column(Integer, default=0, nullable=False)
    max_usage_per_user = Column(Integer, default=1, nullable=False)

    priority = Column(Integer, default=1, nullable=False)
    auto_apply = Column(Boolean, default=False, nullable=False)
    requires_code = Column(Boolean, default=True, nullable=False)
    min_order_amount = Column(Float, default=0.0, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    usage_history = relationship(
        "PromotionUsage",
        back_populates="promotion",
        order_by="PromotionUsage.used_at",
        cascade="all, delete-orphan",
    )


class PromotionUsage(Base):
    """One redemption of a promotion by a user, written when an order is placed."""
    __tablename__ = "promotion_usages"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    promotion_id = Column(Integer, ForeignKey("promotions.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    order_id = Column(String, nullable=True)
    used_at = Column(DateTime, nullable=False)
    discount_amount = Column(Float, default=0.0, nullable=False)

    promotion = relationship("Promotion", back_populates="usage_history")
