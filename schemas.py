"""
Database Schemas for Service Sphere

Each Pydantic model represents a MongoDB collection.
- User -> "user"
- Service -> "service"
- Booking -> "booking"
- Review -> "review"
- PortfolioItem -> "portfolio"

Documents reference each other by ObjectId only; nothing is embedded across
collections.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from constants import (
    DEFAULT_AVATAR,
    MAX_BOOKING_IMAGES,
    PREDEFINED_SERVICES,
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    Role,
)


class Document(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, use_enum_values=True)

    def to_mongo(self) -> Dict[str, Any]:
        doc = self.model_dump()
        # Absent rather than null: dotted $set on address.* and the 2dsphere index need it
        for key in ("address", "location"):
            if key in doc and doc[key] is None:
                del doc[key]
        return doc


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class MediaRef(BaseModel):
    url: str = Field(..., description="Public URL or /uploads path")
    storage_id: Optional[str] = Field(None, description="Key used to delete the object later")


class GeoPoint(BaseModel):
    type: str = "Point"
    coordinates: List[float] = Field(..., min_length=2, max_length=2, description="[longitude, latitude]")


class User(Document):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Unique email address")
    password_hash: str = Field(..., description="Hashed password")
    role: Role = Field(Role.CUSTOMER, description="Role: customer, provider, admin")
    phone: Optional[str] = None
    address: Optional[Address] = None
    location: Optional[GeoPoint] = None
    # legacy documents carry a plain path string
    avatar: Union[MediaRef, str] = DEFAULT_AVATAR
    is_active: bool = Field(True, description="Whether user is active")
    average_rating: float = Field(0.0, ge=0, le=5)
    total_reviews: int = Field(0, ge=0)
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Service(Document):
    provider_id: ObjectId
    title: str = Field(..., description="One of PREDEFINED_SERVICES")
    description: str = Field(..., max_length=1000)
    price: float = Field(..., ge=0)
    category: str
    images: List[str] = Field(default_factory=list)
    duration: int = Field(..., gt=0, description="Duration in minutes")
    availability: str = "Mon-Fri, 9am-5pm"
    address: Optional[Address] = None
    location: Optional[GeoPoint] = None
    average_rating: float = Field(0.0, ge=0, le=5)
    total_reviews: int = Field(0, ge=0)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("title")
    @classmethod
    def title_is_predefined(cls, v: str) -> str:
        if v not in PREDEFINED_SERVICES:
            raise ValueError("Service title is not supported")
        return v

    @field_validator("category")
    @classmethod
    def strip_category(cls, v: str) -> str:
        return v.strip()


class Booking(Document):
    customer_id: ObjectId
    provider_id: ObjectId
    service_id: ObjectId
    scheduled_date: datetime
    status: BookingStatus = BookingStatus.PENDING
    total_price: float = Field(..., ge=0)
    notes: Optional[str] = Field(None, max_length=500)
    customer_address: Address
    contact_phone: str
    customer_images: List[MediaRef] = Field(default_factory=list, max_length=MAX_BOOKING_IMAGES)
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: PaymentMethod = PaymentMethod.CASH
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[Role] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class DetailedRatings(BaseModel):
    quality: Optional[int] = Field(None, ge=1, le=5)
    punctuality: Optional[int] = Field(None, ge=1, le=5)
    communication: Optional[int] = Field(None, ge=1, le=5)
    value: Optional[int] = Field(None, ge=1, le=5)


class Review(Document):
    booking_id: ObjectId = Field(..., description="Unique: one review per booking")
    customer_id: ObjectId
    provider_id: ObjectId
    service_id: ObjectId
    rating: int = Field(..., ge=1, le=5, description="Rating 1-5")
    comment: Optional[str] = Field(None, max_length=500)
    detailed_ratings: Optional[DetailedRatings] = None
    is_verified: bool = False
    helpful: int = 0
    not_helpful: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Certification(BaseModel):
    name: str
    issuing_organization: Optional[str] = None
    date_obtained: Optional[datetime] = None


class PortfolioItem(Document):
    provider_id: ObjectId
    title: str = Field(..., max_length=100)
    description: str
    images: List[MediaRef] = Field(..., min_length=1, description="At least one image")
    category: str
    skills: List[str] = Field(default_factory=list)
    experience: int = Field(0, ge=0, description="Years of experience")
    certifications: List[Certification] = Field(default_factory=list)
    resume: Optional[MediaRef] = None
    featured: bool = False
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
