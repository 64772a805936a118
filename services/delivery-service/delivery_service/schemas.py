from __future__ import annotations

from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .domain import AssignmentStatus, OrderStatus, PaymentMethod, Role


class Record(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class HealthResponse(BaseModel):
    status: Literal["ok"]


class MessageResponse(BaseModel):
    message: str


class RegisterRequest(BaseModel):
    full_name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=1)
    phone: Optional[str] = None


class UserSummary(Record):
    id: int
    full_name: str
    email: str
    phone: Optional[str] = None


class RegisterResponse(BaseModel):
    message: str
    user: UserSummary
    role: Role


class LoginRequest(BaseModel):
    email: str
    password: str
    role: Optional[Role] = Field(
        default=None, description="Reject the login unless the user holds this role."
    )


class IdentitySummary(Record):
    id: int
    email: str
    roles: List[Role]


class TokenResponse(BaseModel):
    token: str
    user: IdentitySummary


class AssignRoleRequest(BaseModel):
    email: str
    role: Role


class AddressRequest(BaseModel):
    title: Optional[str] = None
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    postal_code: Optional[str] = None
    is_default: bool = False


class AddressUpdateRequest(BaseModel):
    title: Optional[str] = None
    street: Optional[str] = Field(default=None, min_length=1)
    city: Optional[str] = Field(default=None, min_length=1)
    postal_code: Optional[str] = None
    is_default: Optional[bool] = None


class Address(Record):
    id: int
    user_id: int
    title: str
    street: str
    city: str
    postal_code: Optional[str] = None
    is_default: bool


class RestaurantRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None


class RestaurantUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    is_active: Optional[bool] = None


class Restaurant(Record):
    id: int
    owner_id: Optional[int] = None
    name: str
    description: Optional[str] = None
    is_active: bool
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None


class RestaurantAddressRequest(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: Optional[str] = None
    postal_code: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)


class RestaurantAddress(Record):
    restaurant_id: int
    street: str
    city: str
    state: Optional[str] = None
    postal_code: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class MenuItemRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    is_available: bool = True
    category_ids: List[int] = Field(default_factory=list)


class MenuItemUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    is_available: Optional[bool] = None


class MenuItem(Record):
    id: int
    restaurant_id: int
    name: str
    description: Optional[str] = None
    price: float
    is_available: bool
    categories: List[str] = Field(default_factory=list)


class CategoryRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)


class Category(Record):
    id: int
    name: str


class CategoryLinkRequest(BaseModel):
    category_id: int = Field(..., gt=0)


class DeletedResponse(BaseModel):
    message: str
    id: int


class OrderItem(BaseModel):
    menu_item_id: int = Field(..., gt=0)
    quantity: int = Field(..., gt=0)


class CreateOrderRequest(BaseModel):
    restaurant_id: int = Field(..., gt=0)
    address_id: int = Field(..., gt=0)
    items: List[OrderItem] = Field(..., min_length=1)
    payment_method: PaymentMethod


class OrderPlacement(BaseModel):
    message: str = "Order created successfully"
    orderId: int
    totalAmount: float
    courierId: int
    status: OrderStatus
    payment_status: str


class OrderLineSummary(Record):
    id: int
    menu_item_id: Optional[int] = None
    name: Optional[str] = None
    quantity: int
    unit_price: float
    line_total: float


class OrderSummary(Record):
    id: int
    customer_id: Optional[int] = None
    restaurant_id: Optional[int] = None
    restaurant_name: Optional[str] = None
    address_id: Optional[int] = None
    status: str
    total_amount: float
    created_at: str
    updated_at: str
    items: List[OrderLineSummary] = Field(default_factory=list)


class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus


class AssignCourierRequest(BaseModel):
    order_id: int = Field(..., gt=0)
    courier_id: int = Field(..., gt=0)


class AssignmentStatusRequest(BaseModel):
    status: AssignmentStatus


class Assignment(Record):
    id: int
    order_id: int
    courier_id: Optional[int] = None
    status: str
    assigned_at: str
    picked_at: Optional[str] = None
    delivered_at: Optional[str] = None
    total_amount: Optional[float] = None
    restaurant_name: Optional[str] = None


class PayRequest(BaseModel):
    order_id: int = Field(..., gt=0)
    payment_method: PaymentMethod


class Payment(Record):
    id: int
    order_id: int
    amount: float
    payment_method: Optional[str] = None
    status: str
    created_at: str


class RatingRequest(BaseModel):
    order_id: int = Field(..., gt=0)
    score: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class Rating(Record):
    id: int
    order_id: int
    user_id: Optional[int] = None
    restaurant_id: int
    score: int
    comment: Optional[str] = None
    created_at: str
    customer_name: Optional[str] = None


class RestaurantScore(Record):
    id: int
    name: str
    avg_rating: float
    rating_count: int


class PopularItem(Record):
    id: int
    name: str
    price: float
    total_sold: int


class OrderHistoryEntry(Record):
    id: int
    created_at: str
    status: str
    total_amount: float
    restaurant_name: Optional[str] = None
    item_count: int
