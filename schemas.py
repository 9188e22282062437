"""
Database Schemas for the farm marketplace

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name (OrderItem -> "order_item").
Request/response shapes used by the API live at the bottom of the module.
"""
from enum import Enum
from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, Field, EmailStr, field_validator


class UserType(str, Enum):
    farmer = "farmer"
    buyer = "buyer"


class OrderStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"


class PaymentStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    failed = "failed"


class User(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=6, description="Plain on input, stored hashed")
    email: EmailStr = Field(..., description="Email address")
    name: str = Field(..., min_length=1, description="Full name")
    user_type: UserType
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    about: Optional[str] = None
    profile_image: Optional[str] = None

class Category(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    image_url: Optional[str] = None

class Product(BaseModel):
    name: str = Field(..., min_length=2)
    description: Optional[str] = None
    category_id: Optional[str] = None
    price: float = Field(..., gt=0)
    unit: str = Field(..., min_length=1, description="e.g., kg or dozen")
    available_quantity: float = Field(..., ge=0)
    min_order_quantity: float = Field(1, gt=0)
    image_url: Optional[str] = None
    is_organic: bool = False
    in_stock: bool = True

class OrderItem(BaseModel):
    product_id: str
    quantity: float = Field(..., gt=0)

class Order(BaseModel):
    shipping_address: Optional[str] = None
    delivery_notes: Optional[str] = None

class Review(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


# Request bodies
class LoginRequest(BaseModel):
    username: str
    password: str

class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    about: Optional[str] = None
    profile_image: Optional[str] = None

    # Omitting name leaves it alone; null would blank a required field
    @field_validator("name")
    @classmethod
    def name_not_null(cls, v):
        if v is None:
            raise ValueError("name cannot be null")
        return v

class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2)
    description: Optional[str] = None
    category_id: Optional[str] = None
    price: Optional[float] = Field(None, gt=0)
    unit: Optional[str] = Field(None, min_length=1)
    available_quantity: Optional[float] = Field(None, ge=0)
    min_order_quantity: Optional[float] = Field(None, gt=0)
    image_url: Optional[str] = None
    is_organic: Optional[bool] = None
    in_stock: Optional[bool] = None

    # description, category_id and image_url may be cleared with null; the rest may not
    @field_validator("name", "price", "unit", "available_quantity", "min_order_quantity", "is_organic", "in_stock")
    @classmethod
    def required_fields_not_null(cls, v, info):
        if v is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return v

class OrderCreate(BaseModel):
    order: Order = Field(default_factory=Order)
    items: List[OrderItem]

class StatusUpdate(BaseModel):
    status: str


# Responses
class UserOut(BaseModel):
    id: str
    username: str
    email: EmailStr
    name: str
    user_type: UserType
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    about: Optional[str] = None
    profile_image: Optional[str] = None
    is_verified: bool = False
    created_at: Optional[datetime] = None

class LoginResponse(BaseModel):
    message: str
    user: UserOut
