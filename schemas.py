"""
Schemas for AgriConnect

Tables:
- users: farmers, customers, admins and superadmins
- products: chicken, eggs and manure listed by farmers
- orders / order_items: customer orders, one farmer per order

Attributes are snake_case; on the wire every model speaks camelCase.
"""

from datetime import datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

Role = Literal["farmer", "customer", "admin", "superadmin"]
Category = Literal["chicken", "eggs", "manure"]
OrderStatus = Literal["pending", "confirmed", "shipped", "delivered", "cancelled"]

ADMIN_ROLES = ("admin", "superadmin")

DEFAULT_LAT = -1.9441
DEFAULT_LNG = 30.0619
DEFAULT_ADDRESS = "Kigali, Rwanda"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UpdateModel(CamelModel):
    # Partial updates accept a closed set of fields only
    model_config = ConfigDict(extra="forbid")


# Nested sub-structs

class Location(CamelModel):
    lat: float = Field(DEFAULT_LAT, ge=-90, le=90)
    lng: float = Field(DEFAULT_LNG, ge=-180, le=180)
    address: str = DEFAULT_ADDRESS


class Farm(CamelModel):
    name: str
    description: Optional[str] = None
    certifications: List[str] = Field(default_factory=list)
    established_year: Optional[int] = None


class FarmerStats(CamelModel):
    total_orders: int = 0
    rating: float = 0
    total_revenue: float = 0


class Quality(CamelModel):
    rating: float = Field(0, ge=0, le=5, description="Average rating out of 5")
    reviews: int = Field(0, ge=0)
    organic: bool = False
    freshness: int = Field(100, ge=0, le=100, description="Freshness score 0-100")


class QualityUpdate(UpdateModel):
    rating: Optional[float] = Field(None, ge=0, le=5)
    reviews: Optional[int] = Field(None, ge=0)
    organic: Optional[bool] = None
    freshness: Optional[int] = Field(None, ge=0, le=100)


# Users

class User(CamelModel):
    id: str
    name: str
    email: EmailStr
    role: Role
    phone: Optional[str] = None
    avatar: Optional[str] = None
    location: Location = Field(default_factory=Location)
    farm: Optional[Farm] = Field(None, description="Farmers only")
    stats: Optional[FarmerStats] = Field(None, description="Farmers only")
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SignUpBody(CamelModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=1)
    phone: Optional[str] = None
    role: Literal["farmer", "customer"] = "customer"
    location: Union[Location, str, None] = Field(None, description="Address string or full location")
    farm: Optional[Farm] = None


class SignInBody(CamelModel):
    email: EmailStr
    password: str


class AuthResponse(CamelModel):
    user: User
    token: str


class UserCreate(SignUpBody):
    role: Role = "customer"
    avatar: Optional[str] = None


class UserUpdate(UpdateModel):
    name: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = None
    avatar: Optional[str] = None
    location: Optional[Location] = None
    farm: Optional[Farm] = None
    is_active: Optional[bool] = None


# Products

class Product(CamelModel):
    id: str
    farmer_id: str
    name: str
    category: Category
    price: float = Field(..., ge=0)
    unit: str
    description: str = ""
    images: List[str] = Field(default_factory=list)
    stock: int = Field(0, ge=0)
    quality: Quality = Field(default_factory=Quality)
    location: Location = Field(default_factory=Location)
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProductCreate(CamelModel):
    farmer_id: Optional[str] = Field(None, description="Owner; only admins may set it")
    name: str = Field(..., min_length=1)
    category: Category
    price: float = Field(..., ge=0)
    unit: str = Field(..., min_length=1)
    description: str = ""
    images: List[str] = Field(default_factory=list)
    stock: int = Field(0, ge=0)
    quality: Quality = Field(default_factory=Quality)
    location: Optional[Location] = None


class ProductUpdate(UpdateModel):
    name: Optional[str] = Field(None, min_length=1)
    category: Optional[Category] = None
    price: Optional[float] = Field(None, ge=0)
    unit: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    images: Optional[List[str]] = None
    stock: Optional[int] = Field(None, ge=0)
    quality: Optional[QualityUpdate] = None
    location: Optional[Location] = None
    is_active: Optional[bool] = None


# Orders

class OrderItem(CamelModel):
    product_id: str
    product_name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)


class Order(CamelModel):
    id: str
    customer_id: str
    customer_name: str
    customer_phone: str = ""
    farmer_id: str
    items: List[OrderItem]
    total: float
    status: OrderStatus = "pending"
    delivery_address: str
    estimated_delivery: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


class CartLine(CamelModel):
    """A cart line as sent by the client. Price and farmer come from the stored product."""
    product_id: str
    quantity: int = Field(..., ge=1)
    farmer_id: Optional[str] = None
    price: Optional[float] = None


class OrderCreate(CamelModel):
    farmer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    items: List[CartLine] = Field(..., min_length=1)
    delivery_address: str = Field(..., min_length=1)
    estimated_delivery: Optional[datetime] = None
    notes: Optional[str] = None


class CheckoutBody(CamelModel):
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    items: List[CartLine] = Field(..., min_length=1)
    delivery_address: str = Field(..., min_length=1)
    notes: Optional[str] = None


class OrderStatusUpdate(CamelModel):
    status: OrderStatus


# Recommendations / misc

class Recommendation(CamelModel):
    product_id: str
    score: float
    reason: str
    savings: Optional[float] = None
    quality_bonus: Optional[float] = None


class UploadResult(CamelModel):
    url: str
