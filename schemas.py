"""
Database Schemas for the Storefront

Each Pydantic model below the "Collections" header represents a MongoDB
collection; the collection name is the lowercase of the class name.
Documents are stored with snake_case keys, the JSON API speaks camelCase.
"""
from datetime import datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

IMAGE_URL_PATTERN = r"(?i)^https?://.*\.(png|jpg|jpeg|gif|svg|webp)$"
PDF_URL_PATTERN = r"(?i)^https?://.*\.pdf$"

ProductType = Literal["certificate", "notes", "exam"]


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -----------------------------
# Collections
# -----------------------------
class User(BaseModel):
    name: str
    email: EmailStr
    password_hash: str
    is_admin: bool = False
    stripe_customer_id: Optional[str] = None
    reset_password_token: Optional[str] = None
    reset_password_expire: Optional[datetime] = None


def _normalise_type(v):
    return v.strip().lower() if isinstance(v, str) else v


class ProductBase(ApiModel):
    name: str = Field(..., min_length=1)
    subject_name: str = Field(..., min_length=1)
    subject_code: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    image: str = Field(..., pattern=IMAGE_URL_PATTERN)
    description: str = Field(..., min_length=1)
    type: ProductType
    pdf_link: str = Field(..., pattern=PDF_URL_PATTERN)

    @field_validator("type", mode="before")
    @classmethod
    def type_lowercase(cls, v):
        return _normalise_type(v)


class Product(ProductBase):
    ratings: float = 0
    number_of_reviews: int = 0


class OrderItem(ApiModel):
    """Denormalised copy of a product at checkout time."""
    product: str
    name: str
    subject_name: str
    subject_code: str
    price: float
    image: str


class PaymentResult(ApiModel):
    id: str
    status: Optional[str] = None


class Order(ApiModel):
    user_id: str
    order_items: List[OrderItem]
    total_price: float
    payment_method: str
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    payment_result: Optional[PaymentResult] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None


class Review(ApiModel):
    user_id: str
    product_id: str
    name: str
    rating: int = Field(..., ge=1, le=5)
    comment: str
    approved: bool = False


# -----------------------------
# Auth / profile
# -----------------------------
class UserCreate(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    password: Optional[str] = Field(None, min_length=6)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    password: str = Field(..., min_length=6)


class UserPublic(ApiModel):
    id: str
    name: str
    email: EmailStr
    is_admin: bool = False


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserPublic


# -----------------------------
# Catalog
# -----------------------------
class ProductCreate(ProductBase):
    pass


class ProductUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=1)
    subject_name: Optional[str] = Field(None, min_length=1)
    subject_code: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, ge=0)
    image: Optional[str] = Field(None, pattern=IMAGE_URL_PATTERN)
    description: Optional[str] = Field(None, min_length=1)
    type: Optional[ProductType] = None
    pdf_link: Optional[str] = Field(None, pattern=PDF_URL_PATTERN)

    @field_validator("type", mode="before")
    @classmethod
    def type_lowercase(cls, v):
        return _normalise_type(v)


class ProductPublic(Product):
    id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# -----------------------------
# Reviews
# -----------------------------
class ReviewCreate(ApiModel):
    product: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=1)


class ReviewUpdate(ApiModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = Field(None, min_length=1)


class ReviewPublic(ApiModel):
    id: str
    user: str
    product: str
    name: str
    rating: int
    comment: str
    approved: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# -----------------------------
# Orders / Checkout
# -----------------------------
class OrderItemRequest(ApiModel):
    """Client reference to a catalog product; the snapshot is taken server-side."""
    product: str


class PaymentIntentRequest(ApiModel):
    order_items: List[OrderItemRequest]


class PaymentSheet(ApiModel):
    payment_intent: str
    payment_intent_id: str
    ephemeral_key: str
    customer: str
    publishable_key: str
    amount: int
    currency: str


class OrderCreate(ApiModel):
    order_items: List[OrderItemRequest]
    total_price: float = Field(..., ge=0)
    payment_method: str = "card"
    payment_result: PaymentResult


class OrderUser(ApiModel):
    id: str
    name: str
    email: EmailStr


class OrderPublic(ApiModel):
    id: str
    user: Union[OrderUser, str]
    order_items: List[OrderItem]
    total_price: float
    payment_method: str
    is_paid: bool
    paid_at: Optional[datetime] = None
    payment_result: Optional[PaymentResult] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
