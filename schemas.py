"""
Database Schemas

Upcycled goods marketplace models.
Each Pydantic model corresponds to a MongoDB collection (lowercased class name).
References to other documents are stored as ObjectId strings.
"""
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

Category = Literal["home-decor", "jewelry", "furniture", "art", "fashion", "other"]
Role = Literal["customer", "seller", "admin"]


def _now():
    return datetime.now(timezone.utc)


def _check_materials(value):
    if value is None:
        return value
    cleaned = [m.strip() for m in value]
    if any(not m for m in cleaned):
        raise ValueError("materials_used entries must be non-empty")
    return cleaned


class User(BaseModel):
    name: str = Field(..., min_length=1, description="Display name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="BCrypt hashed password")
    role: Role = Field("customer", description="Role: customer | seller | admin")
    avatar: Optional[str] = Field(None, description="Avatar image URL")
    bio: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)


class ProductImage(BaseModel):
    url: str
    public_id: str


class SustainabilityInfo(BaseModel):
    waste_diverted: Optional[str] = Field(None, description="e.g. '2kg of glass'")
    co2_reduction: Optional[str] = None


class Product(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    price: float = Field(..., ge=0, description="Price in USD")
    category: Category
    materials_used: List[str] = Field(default_factory=list)
    colors: List[str] = Field(default_factory=list)
    images: List[ProductImage] = Field(default_factory=list)
    sustainability_info: SustainabilityInfo = Field(default_factory=SustainabilityInfo)
    seller: str = Field(..., description="Owning user id")
    stock: int = Field(1, ge=0)
    reviews: List[str] = Field(default_factory=list, description="Review ids")
    average_rating: float = Field(0, ge=0, le=5)
    created_at: datetime = Field(default_factory=_now)

    @field_validator("materials_used")
    @classmethod
    def validate_materials(cls, value):
        return _check_materials(value)


class ProductUpdate(BaseModel):
    """Fields a seller may change. Images are only ever appended via uploads."""
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, ge=0)
    category: Optional[Category] = None
    materials_used: Optional[List[str]] = None
    colors: Optional[List[str]] = None
    sustainability_info: Optional[SustainabilityInfo] = None
    stock: Optional[int] = Field(None, ge=0)

    @field_validator("materials_used")
    @classmethod
    def validate_materials(cls, value):
        return _check_materials(value)


class Review(BaseModel):
    product: str
    user: str
    rating: int = Field(..., ge=1, le=5)
    review: str = Field(..., min_length=1, description="Review body")
    created_at: datetime = Field(default_factory=_now)


class ReviewIn(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    review: str = Field(..., min_length=1)


class ReviewUpdate(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    review: Optional[str] = Field(None, min_length=1)
