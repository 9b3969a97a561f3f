"""
Pydantic Schemas for Request/Response Validation

Author: Khalil Bannouri
Version: 1.0.0
"""

import re
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from ordering.core.permissions import DietPartition, Role
from ordering.models import CustomerType, OrderStatus, OrderType


def _check_phone(v: Optional[str]) -> Optional[str]:
    if v is None or v == "":
        return None
    cleaned = re.sub(r'[^\d]', '', v)
    if len(cleaned) < 10:
        raise ValueError('Phone number must have at least 10 digits')
    return v


# =============================================================================
# GUEST SCHEMAS
# =============================================================================

class GuestContactUpdate(BaseModel):
    """Contact details a guest may attach to their session."""
    name: Optional[str] = Field(None, min_length=1, max_length=100, examples=["Jane Doe"])
    email: Optional[EmailStr] = Field(None, examples=["jane@example.com"])
    phone: Optional[str] = Field(None, max_length=20, examples=["555-123-4567"])

    @field_validator('phone')
    @classmethod
    def validate_phone(cls, v: Optional[str]) -> Optional[str]:
        return _check_phone(v)


class GuestPromoteRequest(BaseModel):
    """Turn the current guest session into a customer account."""
    password: str = Field(..., max_length=128)
    email: Optional[EmailStr] = None
    name: Optional[str] = Field(None, min_length=1, max_length=100)


class GuestSessionResponse(BaseModel):
    success: bool = True
    session_id: str
    user: "UserResponse"


# =============================================================================
# USER SCHEMAS
# =============================================================================

class UserResponse(BaseModel):
    id: int
    name: str
    email: Optional[str]
    phone: Optional[str]
    role: Role
    is_email_verified: bool
    is_active: bool
    created_at: datetime
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class PromotedUserResponse(BaseModel):
    """The new customer account and a bearer token for it."""
    user: UserResponse
    access_token: str
    token_type: str = "bearer"


class UserRoleUpdate(BaseModel):
    role: Role


class UserListResponse(BaseModel):
    total: int
    users: List[UserResponse]


# =============================================================================
# CART SCHEMAS
# =============================================================================

class CartItemAdd(BaseModel):
    """Add a menu item to the cart. Prices always come from the menu."""
    menu_item_id: int = Field(..., examples=[1])
    quantity: int = Field(default=1, examples=[2])
    size: Optional[str] = Field(None, max_length=20, examples=["Large"])
    addon_ids: List[str] = Field(default_factory=list, examples=[["x-cheese"]])
    instructions: Optional[str] = Field(None, max_length=200, examples=["No onions"])


class CartItemUpdate(BaseModel):
    quantity: int = Field(..., examples=[3])


class LineItemResponse(BaseModel):
    line_id: str
    menu_item_id: int
    name: str
    unit_price: float
    quantity: int
    size: Optional[str]
    addons: dict[str, float]
    instructions: Optional[str]
    is_vegetarian: bool
    item_total: float


class CartResponse(BaseModel):
    owner_id: int
    items: List[LineItemResponse]
    subtotal: float
    total_items: int
    version: int


class CartTotalsResponse(BaseModel):
    subtotal: float
    tax: float
    total: float
    total_items: int
    tax_rate: float


# =============================================================================
# ORDER SCHEMAS
# =============================================================================

class CheckoutRequest(BaseModel):
    """Request schema for converting the cart into an order."""
    order_type: OrderType = Field(default=OrderType.DELIVERY, examples=["delivery"])
    delivery_address: Optional[str] = Field(None, max_length=500, examples=["350 Fifth Avenue, New York"])
    customer_name: Optional[str] = Field(None, min_length=2, max_length=100)
    customer_email: Optional[EmailStr] = None
    customer_phone: Optional[str] = Field(None, max_length=20)
    special_instructions: Optional[str] = Field(None, max_length=500)

    @field_validator('customer_phone')
    @classmethod
    def validate_phone(cls, v: Optional[str]) -> Optional[str]:
        return _check_phone(v)


class OrderStatusUpdate(BaseModel):
    status: OrderStatus = Field(..., examples=["confirmed"])
    note: Optional[str] = Field(None, max_length=500)
    cancel_reason: Optional[str] = Field(None, max_length=500)


class OrderResponse(BaseModel):
    """Response schema for a single order."""
    id: int
    order_number: str
    user_id: Optional[int]
    customer_type: CustomerType
    customer_name: str
    customer_email: Optional[str]
    customer_phone: Optional[str]
    order_type: OrderType
    delivery_address: Optional[str]
    special_instructions: Optional[str]
    items: List[dict[str, Any]]
    diet_partition: DietPartition
    subtotal: float
    tax: float
    delivery_fee: float
    total_amount: float
    status: OrderStatus
    status_history: List[dict[str, Any]]
    cancel_reason: Optional[str]
    estimated_ready_at: Optional[datetime]
    created_at: datetime
    updated_at: Optional[datetime]
    confirmed_at: Optional[datetime]
    preparing_at: Optional[datetime]
    ready_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]

    class Config:
        from_attributes = True


class OrderListResponse(BaseModel):
    """Response for listing multiple orders."""
    total: int
    orders: List[OrderResponse]


class OrderCreateResponse(BaseModel):
    """Response after a successful checkout."""
    success: bool
    message: str
    order: OrderResponse


# =============================================================================
# CATALOG SCHEMAS
# =============================================================================

class AddonSchema(BaseModel):
    id: Optional[str] = Field(None, max_length=40)
    name: str = Field(..., min_length=1, max_length=60)
    price: float = Field(default=0.0, ge=0)


class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    is_vegetarian: bool = False
    is_active: bool = True
    sort_order: int = 0


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    is_vegetarian: Optional[bool] = None
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None


class CategoryResponse(BaseModel):
    id: int
    name: str
    description: Optional[str]
    is_vegetarian: bool
    is_active: bool
    sort_order: int

    class Config:
        from_attributes = True


class MenuItemCreate(BaseModel):
    category_id: Optional[int] = None
    name: str = Field(..., min_length=1, max_length=100, examples=["Paneer Tikka Pizza"])
    description: Optional[str] = None
    price: float = Field(..., gt=0, examples=[14.99])
    mrp: Optional[float] = Field(None, gt=0)
    sizes: List[str] = Field(default_factory=list, examples=[["Small", "Medium", "Large"]])
    addons: List[AddonSchema] = Field(default_factory=list)
    is_vegetarian: Optional[bool] = None
    is_active: bool = True
    is_available: bool = True
    preparation_time: int = Field(default=15, ge=0, le=240)
    stock: Optional[int] = Field(None, ge=0, description="Units on hand; omit for made-to-order dishes")


class MenuItemUpdate(BaseModel):
    category_id: Optional[int] = None
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    price: Optional[float] = Field(None, gt=0)
    mrp: Optional[float] = Field(None, gt=0)
    sizes: Optional[List[str]] = None
    addons: Optional[List[AddonSchema]] = None
    is_vegetarian: Optional[bool] = None
    is_active: Optional[bool] = None
    is_available: Optional[bool] = None
    preparation_time: Optional[int] = Field(None, ge=0, le=240)
    stock: Optional[int] = Field(None, ge=0)


class MenuItemResponse(BaseModel):
    id: int
    category_id: Optional[int]
    name: str
    description: Optional[str]
    price: float
    mrp: Optional[float]
    sizes: List[str]
    addons: List[dict[str, Any]]
    is_vegetarian: bool
    is_active: bool
    is_available: bool
    preparation_time: int
    stock: Optional[int] = None

    class Config:
        from_attributes = True


# =============================================================================
# COMMON SCHEMAS
# =============================================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    notifier: str
    timestamp: datetime


GuestSessionResponse.model_rebuild()
