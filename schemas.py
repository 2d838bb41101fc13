from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    computed_field,
    field_validator,
    model_validator,
)
from typing import Optional, List, Any, Union
from datetime import datetime, timezone
from enum import Enum


# ─────────────── Promotion Type Enum ───────────────

class PromotionType(str, Enum):
    buy_x_get_y = "buyXGetY"
    quantity_discount = "quantityDiscount"
    cart_total = "cartTotal"


class InvalidRuleError(ValueError):
    """Rule payload does not match the shape required by the promotion type."""


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC; aware ones are converted to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ─────────────── Rule Payloads ───────────────

def _check_discount(percentage: Optional[float], amount: Optional[float]) -> None:
    if percentage is not None and not 0 <= percentage <= 100:
        raise ValueError("Discount percentage must be between 0 and 100")
    if amount is not None and amount < 0:
        raise ValueError("Discount amount cannot be negative")


class BuyXGetYRule(BaseModel):
    buy_quantity: int             # Paid units needed per set
    get_quantity: int             # Free units granted per set
    same_item: bool = True        # Free units are of the bought product
    free_item: Optional[int] = None  # Only this product qualifies when same_item is False

    @field_validator("buy_quantity", "get_quantity")
    @classmethod
    def qty_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Quantity must be positive")
        return v


class QuantityDiscountRule(BaseModel):
    min_quantity: int
    discount_percentage: Optional[float] = None
    discount_amount: Optional[float] = None

    @field_validator("min_quantity")
    @classmethod
    def min_qty_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Minimum quantity must be positive")
        return v

    @model_validator(mode="after")
    def discount_present(self) -> "QuantityDiscountRule":
        _check_discount(self.discount_percentage, self.discount_amount)
        if (self.discount_percentage or 0) <= 0 and (self.discount_amount or 0) <= 0:
            raise ValueError("Either discount_percentage or discount_amount must be positive")
        return self


class CartTotalRule(BaseModel):
    min_amount: float
    discount_percentage: Optional[float] = None
    discount_amount: Optional[float] = None
    free_item: Optional[int] = None
    free_shipping: bool = False

    @field_validator("min_amount")
    @classmethod
    def min_amount_not_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Minimum amount cannot be negative")
        return v

    @model_validator(mode="after")
    def discount_in_range(self) -> "CartTotalRule":
        _check_discount(self.discount_percentage, self.discount_amount)
        return self


Rule = Union[BuyXGetYRule, QuantityDiscountRule, CartTotalRule]

RULE_MODELS = {
    PromotionType.buy_x_get_y: BuyXGetYRule,
    PromotionType.quantity_discount: QuantityDiscountRule,
    PromotionType.cart_total: CartTotalRule,
}


def parse_rule(type_, payload) -> Rule:
    """Validate ``payload`` as the rule shape required by ``type_``."""
    try:
        type_ = PromotionType(type_)
    except ValueError:
        raise InvalidRuleError(f"Unknown promotion type: {type_}")

    model = RULE_MODELS[type_]
    if isinstance(payload, model):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump()
    if not isinstance(payload, dict):
        raise InvalidRuleError(f"Rule for {type_.value} must be an object")

    try:
        return model(**payload)
    except ValidationError as exc:
        reasons = "; ".join(err["msg"] for err in exc.errors())
        raise InvalidRuleError(f"Invalid {type_.value} rule: {reasons}") from exc


# ─────────────── Engine Promotion View ───────────────

class CategoryRef(BaseModel):
    id: int
    code: Optional[str] = None  # None = unresolved, never matches


class UsageRecord(BaseModel):
    user_id: str
    order_id: Optional[str] = None
    used_at: datetime
    discount_amount: float = 0.0


class Promotion(BaseModel):
    """
    Read-only view of a stored promotion, as consumed by the engine.

    ``rule`` always holds the payload variant matching ``type``.
    """
    model_config = {"frozen": True}

    id: int
    name: str = ""
    code: Optional[str] = None
    store_id: int
    type: PromotionType
    rule: Rule

    applicable_products: List[int] = []
    applicable_categories: List[CategoryRef] = []
    excluded_products: List[int] = []
    excluded_categories: List[CategoryRef] = []

    start_date: datetime
    end_date: datetime
    is_active: bool = True

    max_usage: int = 0
    current_usage: int = 0
    max_usage_per_user: int = 1

    priority: int = 1
    auto_apply: bool = False
    requires_code: bool = True
    min_order_amount: float = 0.0

    usage_history: List[UsageRecord] = []

    @model_validator(mode="before")
    @classmethod
    def parse_rule_by_type(cls, data: Any) -> Any:
        if isinstance(data, dict) and "type" in data and "rule" in data:
            data = dict(data)
            data["rule"] = parse_rule(data["type"], data["rule"])
        return data

    @field_validator("start_date", "end_date")
    @classmethod
    def normalise_tz(cls, v: datetime) -> datetime:
        return as_utc(v)

    @model_validator(mode="after")
    def rule_matches_type(self) -> "Promotion":
        if not isinstance(self.rule, RULE_MODELS[self.type]):
            raise InvalidRuleError(f"Rule does not match promotion type {self.type.value}")
        return self


# ─────────────── Cart ───────────────

class CartLine(BaseModel):
    model_config = {"frozen": True}

    product_id: Optional[int] = None
    category_code: Optional[str] = None
    quantity: int
    price: float  # Price per unit
    free_quantity: int = 0
    is_free_item: bool = False

    @field_validator("quantity")
    @classmethod
    def qty_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Quantity must be positive")
        return v

    @field_validator("price")
    @classmethod
    def price_not_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Price cannot be negative")
        return v

    @field_validator("free_quantity")
    @classmethod
    def free_qty_not_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Free quantity cannot be negative")
        return v

    @model_validator(mode="after")
    def free_within_quantity(self) -> "CartLine":
        if self.free_quantity > self.quantity:
            raise ValueError("Free quantity cannot exceed quantity")
        return self

    @computed_field
    @property
    def paid_quantity(self) -> int:
        if self.is_free_item:
            return 0
        return self.quantity - self.free_quantity

    @computed_field
    @property
    def chargeable_amount(self) -> float:
        return self.price * self.paid_quantity


class Cart(BaseModel):
    model_config = {"frozen": True}

    items: List[CartLine] = []

    @computed_field
    @property
    def chargeable_total(self) -> float:
        return sum(item.chargeable_amount for item in self.items)


# ─────────────── Engine Results ───────────────

class DiscountOutcome(BaseModel):
    type: PromotionType
    discount_amount: float = 0.0
    # buyXGetY
    product_id: Optional[int] = None
    original_quantity: Optional[int] = None
    free_quantity: int = 0
    # cartTotal
    cart_total: Optional[float] = None
    free_item: Optional[int] = None
    free_shipping: Optional[bool] = None

    description: Optional[str] = None


class PromotionSummary(BaseModel):
    promotion_id: int
    outcomes: List[DiscountOutcome]
    total_discount: float
    original_total: float
    final_total: float
    cart: Cart  # Cart after free units were folded in


class RedemptionStatus(str, Enum):
    applied = "applied"
    not_found = "not_found"
    not_eligible = "not_eligible"
    no_applicable_discount = "no_applicable_discount"


class RedemptionResult(BaseModel):
    status: RedemptionStatus
    promotion_id: Optional[int] = None
    summary: Optional[PromotionSummary] = None

    @property
    def ok(self) -> bool:
        return self.status == RedemptionStatus.applied


class StackedResult(BaseModel):
    applied: List[PromotionSummary]
    total_discount: float
    original_total: float
    final_total: float
    cart: Cart


# ─────────────── Category / Product ───────────────

class CategoryCreate(BaseModel):
    code: str
    name: str

    @field_validator("code")
    @classmethod
    def code_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Category code cannot be blank")
        return v


class CategoryResponse(BaseModel):
    id: int
    code: str
    name: str

    model_config = {"from_attributes": True}


class ProductCreate(BaseModel):
    name: str
    category_id: Optional[int] = None


class ProductResponse(BaseModel):
    id: int
    name: str
    category_id: Optional[int] = None

    model_config = {"from_attributes": True}


# ─────────────── Promotion Request / Response ───────────────

class PromotionCreate(BaseModel):
    name: str
    description: Optional[str] = None
    code: Optional[str] = None
    store_id: int
    type: PromotionType
    rule: Any  # Validated per type in validator below

    applicable_products: List[int] = []
    applicable_categories: List[int] = []
    excluded_products: List[int] = []
    excluded_categories: List[int] = []

    start_date: Optional[datetime] = None  # Defaults to now
    end_date: datetime
    is_active: bool = True

    max_usage: int = Field(default=0, ge=0)
    max_usage_per_user: int = Field(default=1, ge=0)
    priority: int = 1
    auto_apply: bool = False
    requires_code: bool = True
    min_order_amount: float = Field(default=0.0, ge=0)

    @field_validator("code")
    @classmethod
    def normalise_code(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().upper()
        return v or None

    @model_validator(mode="after")
    def validate_rule_by_type(self) -> "PromotionCreate":
        self.rule = parse_rule(self.type, self.rule).model_dump()
        if self.start_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class PromotionUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    code: Optional[str] = None
    type: Optional[PromotionType] = None
    rule: Optional[Any] = None
    applicable_products: Optional[List[int]] = None
    applicable_categories: Optional[List[int]] = None
    excluded_products: Optional[List[int]] = None
    excluded_categories: Optional[List[int]] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None
    max_usage: Optional[int] = Field(default=None, ge=0)
    max_usage_per_user: Optional[int] = Field(default=None, ge=0)
    priority: Optional[int] = None
    auto_apply: Optional[bool] = None
    requires_code: Optional[bool] = None
    min_order_amount: Optional[float] = Field(default=None, ge=0)

    @field_validator("code")
    @classmethod
    def normalise_code(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return v.strip().upper() or None


class PromotionResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    code: Optional[str] = None
    store_id: int
    type: PromotionType
    rule: Any
    applicable_products: List[int]
    applicable_categories: List[int]
    excluded_products: List[int]
    excluded_categories: List[int]
    start_date: datetime
    end_date: datetime
    is_active: bool
    max_usage: int
    current_usage: int
    max_usage_per_user: int
    priority: int
    auto_apply: bool
    requires_code: bool
    min_order_amount: float
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# ─────────────── Cart Requests ───────────────

class CartRequest(BaseModel):
    user_id: str
    cart: Cart


class StoreCartRequest(CartRequest):
    store_id: int


class RedeemRequest(StoreCartRequest):
    code: str


class UsageCreate(BaseModel):
    user_id: str
    order_id: Optional[str] = None
    discount_amount: float = Field(default=0.0, ge=0)
    used_at: Optional[datetime] = None  # Defaults to now


class UsageResponse(BaseModel):
    id: int
    promotion_id: int
    user_id: str
    order_id: Optional[str] = None
    used_at: datetime
    discount_amount: float

    model_config = {"from_attributes": True}
