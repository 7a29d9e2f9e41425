"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from shared.models.models import (
    ApprovalStatus,
    AssignmentSource,
    BookingStatus,
    NotificationType,
    UserRole,
)


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    pages: int


# ── Auth ──────────────────────────────────────────────────────

class RegisterRequest(BaseSchema):
    name: str = Field(..., min_length=2, max_length=255)
    email: EmailStr
    phone: Optional[str] = Field(None, pattern=r"^\+?[0-9]{10,15}$")
    password: str = Field(..., min_length=8, max_length=72)


class LoginRequest(BaseSchema):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=72)


# ── User ──────────────────────────────────────────────────────

class UserResponse(BaseSchema):
    id: uuid.UUID
    email: EmailStr
    name: str
    phone: Optional[str]
    role: UserRole
    is_active: bool
    created_at: datetime


class UserUpdateRequest(BaseSchema):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    phone: Optional[str] = Field(None, pattern=r"^\+?[0-9]{10,15}$")


class TokenResponse(BaseSchema):
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds
    user: UserResponse


# ── Service catalog ───────────────────────────────────────────

class ServiceCreateRequest(BaseSchema):
    name: str = Field(..., min_length=2, max_length=100)
    description: str = Field("", max_length=2000)
    base_price: Decimal = Field(..., ge=0)
    max_price: Optional[Decimal] = Field(None, ge=0)
    icon: Optional[str] = Field(None, max_length=50)


class ServiceUpdateRequest(BaseSchema):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=2000)
    base_price: Optional[Decimal] = Field(None, ge=0)
    max_price: Optional[Decimal] = Field(None, ge=0)
    icon: Optional[str] = Field(None, max_length=50)


class ServiceResponse(BaseSchema):
    id: uuid.UUID
    name: str
    description: str
    base_price: Decimal
    max_price: Optional[Decimal]
    icon: Optional[str]
    created_at: datetime


# ── Provider ──────────────────────────────────────────────────

class ProviderCreateRequest(BaseSchema):
    name: str = Field(..., min_length=2, max_length=255)
    email: EmailStr
    phone: Optional[str] = Field(None, pattern=r"^\+?[0-9]{10,15}$")
    password: str = Field(..., min_length=8, max_length=72)
    skill: str = Field(..., min_length=2, max_length=100)
    area: str = Field(..., min_length=2, max_length=255)


class ProviderUpdateRequest(BaseSchema):
    skill: Optional[str] = Field(None, min_length=2, max_length=100)
    area: Optional[str] = Field(None, min_length=2, max_length=255)
    is_active: Optional[bool] = None


class ProviderResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    skill: str
    area: str
    rating: Decimal
    is_active: bool
    approval_status: Optional[ApprovalStatus]
    is_deleted: Optional[bool]
    created_at: datetime
    # Injected from User join
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class ProviderRejectRequest(BaseSchema):
    reason: str = Field(..., min_length=5, max_length=500)


class AdminSuspendRequest(BaseSchema):
    reason: str = Field(..., min_length=5, max_length=500)


class ProviderSearchResponse(BaseSchema):
    items: List[ProviderResponse]
    total: int
    page: int
    page_size: int


# ── Booking ───────────────────────────────────────────────────

class BookingCreateRequest(BaseSchema):
    service_id: uuid.UUID
    provider_id: Optional[uuid.UUID] = None  # Directed search-and-book
    description: str = Field("", max_length=2000)
    address: str = Field(..., min_length=5, max_length=500)
    area: str = Field(..., min_length=2, max_length=255)
    scheduled_date: date
    scheduled_time: time
    amount: Optional[Decimal] = Field(None, ge=0)

    @field_validator("area")
    @classmethod
    def strip_area(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Area must be at least 2 characters")
        return v


class BookingResponse(BaseSchema):
    id: uuid.UUID
    booking_number: str
    customer_id: uuid.UUID
    service_id: uuid.UUID
    provider_id: Optional[uuid.UUID]
    description: str
    address: str
    area: str
    scheduled_date: date
    scheduled_time: time
    amount: Decimal
    status: BookingStatus
    assignment_source: Optional[AssignmentSource]
    cancellation_reason: Optional[str]
    rating: Optional[int]
    review: Optional[str]
    assigned_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    created_at: datetime
    # Joined
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    service_name: Optional[str] = None
    provider_name: Optional[str] = None


class BookingCancelRequest(BaseSchema):
    reason: str = Field(..., min_length=5, max_length=500)


class BookingAssignRequest(BaseSchema):
    provider_id: uuid.UUID


class BookingCompleteRequest(BaseSchema):
    pin: str = Field(..., min_length=1, max_length=12)


class CompletionPinResponse(BaseSchema):
    booking_id: uuid.UUID
    pin: str


class ScanResultResponse(BaseSchema):
    scanned: int
    assigned: int
    waiting: int
    skipped: int
    failed: int


# ── Ratings ───────────────────────────────────────────────────

class RatingCreateRequest(BaseSchema):
    booking_id: uuid.UUID
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = Field(None, max_length=2000)


class RatingResponse(BaseSchema):
    booking_id: uuid.UUID
    provider_id: Optional[uuid.UUID]
    rating: int
    review: Optional[str]
    rated_at: Optional[datetime]
    provider_rating: Optional[Decimal] = None
    customer_name: Optional[str] = None


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    type: NotificationType
    message: str
    is_read: bool
    read_at: Optional[datetime]
    created_at: datetime
    booking_id: Optional[uuid.UUID]


# ── Admin ─────────────────────────────────────────────────────

class AdminAnalyticsResponse(BaseSchema):
    total_customers: int
    total_providers: int
    active_providers: int
    pending_approval: int
    total_bookings: int
    bookings_today: int
    bookings_by_status: dict[str, int]
    completed_revenue: Decimal
    avg_rating: float


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True

