"""
Database Schemas for the Artisania marketplace

Each persisted Pydantic model maps to a MongoDB collection named after the
lowercased class name (User -> "user", Shop -> "shop", ...). The *Create /
*Update models are request bodies; embedded models are nested fields.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

Role = Literal["customer", "seller", "admin"]
Category = Literal[
    "ceramics", "textiles", "jewelry", "painting", "woodwork", "metalwork",
    "glasswork", "leatherwork", "pottery", "sculpture", "other",
]
OrderStatus = Literal["pending", "confirmed", "preparing", "shipped", "delivered", "cancelled", "refunded"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
PaymentMethod = Literal["cash_on_delivery", "credit_card", "bank_transfer", "wallet"]

PHONE_PATTERN = r"^[0-9+\s()-]+$"
OBJECT_ID_PATTERN = r"^[0-9a-fA-F]{24}$"


# ------------ Shared ------------
class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


# ------------ Auth & User ------------
class UserCreate(BaseModel):
    first_name: str = Field(..., min_length=2, max_length=50)
    last_name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Literal["customer", "seller"] = "customer"
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    address: Optional[Address] = None


class UserLogin(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: dict


class UserUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=2, max_length=50)
    last_name: Optional[str] = Field(None, min_length=2, max_length=50)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    address: Optional[Address] = None
    avatar: Optional[str] = None
    # admin only
    role: Optional[Role] = None
    is_active: Optional[bool] = None
    is_verified: Optional[bool] = None


class PasswordChange(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6)


class User(BaseModel):
    first_name: str
    last_name: str
    email: EmailStr
    password_hash: str
    salt: str
    role: Role = "customer"
    phone: Optional[str] = None
    address: Optional[Address] = None
    avatar: Optional[str] = None
    is_active: bool = True
    is_verified: bool = False
    last_login: Optional[datetime] = None


# ------------ Shop ------------
class ShopContact(BaseModel):
    email: Optional[EmailStr] = None
    phone: str = Field(..., pattern=PHONE_PATTERN)
    website: Optional[str] = Field(None, pattern=r"^https?://.+")

    @field_validator("email", mode="before")
    @classmethod
    def blank_email_is_none(cls, v):
        return v or None


class Coordinates(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class ShopAddress(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)
    country: str = "Morocco"
    coordinates: Optional[Coordinates] = None


class SocialMedia(BaseModel):
    facebook: Optional[str] = None
    instagram: Optional[str] = None
    twitter: Optional[str] = None
    youtube: Optional[str] = None


class BusinessInfo(BaseModel):
    business_type: Literal["individual", "company"] = "individual"
    tax_id: Optional[str] = None
    registration_number: Optional[str] = None
    founded_year: Optional[int] = Field(None, ge=1900)

    @field_validator("founded_year")
    @classmethod
    def not_in_future(cls, v):
        if v is not None and v > datetime.now().year:
            raise ValueError("Founded year cannot be in the future")
        return v


class ShopSettings(BaseModel):
    auto_accept_orders: bool = False
    allow_messages: bool = True
    show_contact_info: bool = True


class ShopCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    description: str = Field(..., min_length=10, max_length=1000)
    logo: Optional[str] = None
    banner: Optional[str] = None
    contact: ShopContact
    address: ShopAddress
    social_media: SocialMedia = SocialMedia()
    business_info: BusinessInfo = BusinessInfo()
    categories: List[Category] = []
    settings: ShopSettings = ShopSettings()


class ShopUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    description: Optional[str] = Field(None, min_length=10, max_length=1000)
    logo: Optional[str] = None
    banner: Optional[str] = None
    contact: Optional[ShopContact] = None
    address: Optional[ShopAddress] = None
    social_media: Optional[SocialMedia] = None
    business_info: Optional[BusinessInfo] = None
    categories: Optional[List[Category]] = None
    settings: Optional[ShopSettings] = None


class ShopStats(BaseModel):
    total_products: int = 0
    total_sales: int = 0
    total_revenue: float = 0.0


class Shop(ShopCreate):
    owner_id: str
    is_active: bool = True
    is_verified: bool = False
    is_featured: bool = False
    rating: dict = {"average": 0, "total_reviews": 0}
    stats: ShopStats = ShopStats()


# ------------ Products ------------
class ProductImage(BaseModel):
    url: str = Field(..., min_length=1)
    alt: str = ""


class Dimensions(BaseModel):
    length: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None
    unit: Literal["cm", "m", "inch"] = "cm"


class Weight(BaseModel):
    value: Optional[float] = None
    unit: Literal["g", "kg", "lb"] = "g"


class Specifications(BaseModel):
    materials: List[str] = []
    dimensions: Optional[Dimensions] = None
    weight: Optional[Weight] = None
    colors: List[str] = []


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    description: str = Field(..., min_length=10, max_length=1000)
    price: float = Field(..., ge=0)
    category: Category
    stock: int = Field(0, ge=0)
    images: List[ProductImage] = []
    specifications: Optional[Specifications] = None
    is_featured: bool = False


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    description: Optional[str] = Field(None, min_length=10, max_length=1000)
    price: Optional[float] = Field(None, ge=0)
    category: Optional[Category] = None
    stock: Optional[int] = Field(None, ge=0)
    images: Optional[List[ProductImage]] = None
    specifications: Optional[Specifications] = None
    is_featured: Optional[bool] = None
    is_active: Optional[bool] = None


class Product(ProductCreate):
    shop_id: str
    owner_id: str
    tags: List[str] = []
    is_active: bool = True
    average_rating: float = Field(0, ge=0, le=5)
    total_reviews: int = 0
    total_sales: int = 0


# ------------ Orders ------------
class OrderItemIn(BaseModel):
    product_id: str = Field(..., pattern=OBJECT_ID_PATTERN)
    quantity: int = Field(..., ge=1)


class ShippingAddress(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)
    country: str = "Morocco"
    phone: str = Field(..., pattern=PHONE_PATTERN)

    @field_validator("first_name", "last_name", "street", "city", "postal_code", "phone", mode="before")
    @classmethod
    def strip(cls, v):
        return v.strip() if isinstance(v, str) else v


class OrderNotesIn(BaseModel):
    customer_notes: str = Field("", max_length=500)


class OrderCreate(BaseModel):
    items: List[OrderItemIn] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    billing_address: Optional[ShippingAddress] = None
    payment_method: PaymentMethod = "cash_on_delivery"
    notes: Optional[OrderNotesIn] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    note: Optional[str] = Field(None, max_length=200)


class ProductSnapshot(BaseModel):
    name: str
    image: str = ""
    shop_name: str = ""


class OrderItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    product_snapshot: ProductSnapshot


class Pricing(BaseModel):
    subtotal: float = Field(..., ge=0)
    shipping_cost: float = Field(0, ge=0)
    tax: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    total: float = Field(..., ge=0)


class TimelineEntry(BaseModel):
    status: OrderStatus
    timestamp: datetime
    note: str = ""
    updated_by: Optional[str] = None


class Order(BaseModel):
    order_number: str
    user_id: str
    shop_id: str
    items: List[OrderItem]
    shipping_address: ShippingAddress
    billing_address: Optional[ShippingAddress] = None
    pricing: Pricing
    status: OrderStatus = "pending"
    payment_status: PaymentStatus = "pending"
    payment_method: PaymentMethod = "cash_on_delivery"
    notes: dict = {}
    timeline: List[TimelineEntry] = []
    idempotency_key: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
