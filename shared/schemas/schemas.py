"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, HttpUrl, field_validator


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    pages: int


# ── User ──────────────────────────────────────────────────────

class UserResponse(BaseSchema):
    id: uuid.UUID
    email: EmailStr
    first_name: str
    last_name: str
    phone: Optional[str]
    role: str
    is_verified: bool
    profile_image: Optional[str]
    created_at: datetime


class UserSummary(BaseSchema):
    id: uuid.UUID
    first_name: str
    last_name: str
    profile_image: Optional[str] = None


class UserProfileUpdate(BaseSchema):
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    phone: Optional[str] = Field(None, pattern=r"^\+?[1-9]\d{7,14}$")
    profile_image: Optional[str] = None


# ── Auth ──────────────────────────────────────────────────────

class RegisterRequest(BaseSchema):
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    phone: Optional[str] = Field(None, pattern=r"^\+?[1-9]\d{7,14}$")
    # ADMIN accounts are provisioned, never self-registered
    role: Literal["USER", "AGENT", "LANDLORD"] = "USER"


class LoginRequest(BaseSchema):
    email: EmailStr
    password: str = Field(..., min_length=1)


class TokenResponse(BaseSchema):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds


class AuthResponse(BaseSchema):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


# ── Property ──────────────────────────────────────────────────

class PropertyCreateRequest(BaseSchema):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    address: str = Field(..., min_length=1, max_length=500)
    city: str = Field(..., min_length=1, max_length=100)
    country: str = Field(..., min_length=1, max_length=100)
    zip_code: Optional[str] = Field(None, max_length=20)
    price: Decimal = Field(..., ge=0)
    bedrooms: int = Field(..., ge=0)
    bathrooms: int = Field(..., ge=0)
    size: Optional[float] = Field(None, ge=0)
    images: List[str] = Field(default_factory=list)
    amenities: List[str] = Field(default_factory=list)


class PropertyUpdateRequest(BaseSchema):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    address: Optional[str] = Field(None, min_length=1, max_length=500)
    city: Optional[str] = Field(None, min_length=1, max_length=100)
    country: Optional[str] = Field(None, min_length=1, max_length=100)
    zip_code: Optional[str] = Field(None, max_length=20)
    price: Optional[Decimal] = Field(None, ge=0)
    bedrooms: Optional[int] = Field(None, ge=0)
    bathrooms: Optional[int] = Field(None, ge=0)
    size: Optional[float] = Field(None, ge=0)
    images: Optional[List[str]] = None
    amenities: Optional[List[str]] = None
    available: Optional[bool] = None


class PropertyResponse(BaseSchema):
    id: uuid.UUID
    owner_id: uuid.UUID
    title: str
    description: Optional[str]
    address: str
    city: str
    country: str
    zip_code: Optional[str]
    price: Decimal
    bedrooms: int
    bathrooms: int
    size: Optional[float]
    images: List[str]
    amenities: List[str]
    available: bool
    latitude: Optional[float]
    longitude: Optional[float]
    created_at: datetime
    updated_at: datetime


# ── Booking ───────────────────────────────────────────────────

class BookingCreateRequest(BaseSchema):
    property_id: uuid.UUID
    start_date: date
    end_date: date


class BookingStatusUpdateRequest(BaseSchema):
    status: Literal["PENDING", "CONFIRMED", "CANCELLED", "COMPLETED"]
    reason: Optional[str] = Field(None, max_length=500)


class BookingCancelRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class BookingResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    property_id: uuid.UUID
    start_date: date
    end_date: date
    nights: int
    total_price: Decimal
    status: str
    cancellation_reason: Optional[str]
    is_paid: bool
    payment_intent_id: Optional[str]
    payment_method: Optional[str]
    payment_status: Optional[str]
    confirmed_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


# ── Payment ───────────────────────────────────────────────────

class PaymentIntentRequest(BaseSchema):
    booking_id: uuid.UUID
    amount: Optional[Decimal] = Field(None, ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    payment_method_types: Optional[List[str]] = None


class PaymentIntentResponse(BaseSchema):
    client_secret: Optional[str]
    id: str


class CheckoutSessionRequest(BaseSchema):
    booking_id: uuid.UUID
    amount: Optional[Decimal] = Field(None, ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    success_url: Optional[HttpUrl] = None
    cancel_url: Optional[HttpUrl] = None
    customer_id: Optional[str] = None
    customer_email: Optional[EmailStr] = None


class CheckoutSessionResponse(BaseSchema):
    session_id: str
    url: Optional[str]


class RefundRequest(BaseSchema):
    amount: Optional[Decimal] = Field(None, gt=0)


class RefundResponse(BaseSchema):
    refund_id: str
    status: Optional[str]
    amount: Optional[Decimal]
    booking_id: uuid.UUID


class CustomerResponse(BaseSchema):
    customer_id: str


# ── Search ────────────────────────────────────────────────────

class PropertySearchResponse(BaseSchema):
    total: int
    results: List[Dict[str, Any]]  # property fields plus score / distance (km)
    page: int
    limit: int
    total_pages: int


class SuggestionResponse(BaseSchema):
    title_suggestions: List[str]
    city_suggestions: List[str]
    popular_cities: List[str]
    popular_countries: List[str]


class SyncResponse(BaseSchema):
    success: bool
    indexed: int
    errors: Optional[List[Any]] = None


# ── Geocoding ─────────────────────────────────────────────────

class GeocodeResponse(BaseSchema):
    latitude: float
    longitude: float
    formatted_address: str
    place_id: Optional[str] = None


class ReverseGeocodeResponse(BaseSchema):
    formatted_address: str


class PlacePrediction(BaseSchema):
    place_id: str
    description: str
    main_text: Optional[str] = None
    secondary_text: Optional[str] = None


class PlaceDetailsResponse(BaseSchema):
    latitude: float
    longitude: float
    formatted_address: str
    address_components: List[Dict[str, Any]] = Field(default_factory=list)


# ── Uploads ───────────────────────────────────────────────────

class UploadResponse(BaseSchema):
    url: str
    key: str


class SignedUrlResponse(BaseSchema):
    url: str
    expires_in: int


# ── Messaging ─────────────────────────────────────────────────

class ConversationCreateRequest(BaseSchema):
    title: Optional[str] = Field(None, max_length=255)
    participant_ids: List[uuid.UUID] = Field(default_factory=list)
    property_id: Optional[uuid.UUID] = None
    booking_id: Optional[uuid.UUID] = None
    initial_message: Optional[str] = Field(None, min_length=1, max_length=5000)


class MessageCreateRequest(BaseSchema):
    conversation_id: uuid.UUID
    content: str = Field(..., min_length=1, max_length=5000)

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Message content cannot be blank")
        return v


class MessageResponse(BaseSchema):
    id: uuid.UUID
    conversation_id: uuid.UUID
    sender_id: uuid.UUID
    content: str
    read_at: Optional[datetime]
    created_at: datetime
    sender: Optional[UserSummary] = None


class ConversationResponse(BaseSchema):
    id: uuid.UUID
    title: str
    property_id: Optional[uuid.UUID]
    booking_id: Optional[uuid.UUID]
    participants: List[UserSummary]
    created_at: datetime
    updated_at: datetime
    last_message: Optional[MessageResponse] = None
    unread_count: int = 0
    online_participant_ids: List[uuid.UUID] = Field(default_factory=list)


class MessagePagination(BaseSchema):
    page: int
    limit: int
    total_count: int
    total_pages: int


class MessageListResponse(BaseSchema):
    messages: List[MessageResponse]
    pagination: MessagePagination


class CountResponse(BaseSchema):
    count: int


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    type: str
    title: str
    body: str
    data: Optional[Dict[str, Any]]
    is_read: bool
    read_at: Optional[datetime]
    created_at: datetime
    booking_id: Optional[uuid.UUID]


# ── Generic ───────────────────────────────────────────────────

class StatusMessage(BaseSchema):
    message: str
    success: bool = True
