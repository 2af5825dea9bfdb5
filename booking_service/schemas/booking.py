from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime, date
from decimal import Decimal

from .payment import PaymentResponse


# ======== Policies (stored as JSON on the booking) ========

class CancellationFeeTier(BaseModel):
    days_before_start: int = Field(..., ge=0)
    fee_percentage: Decimal = Field(..., ge=0, le=100)


class CancellationPolicy(BaseModel):
    free_cancellation_until: Optional[datetime] = None
    non_refundable: bool = False
    cancellation_fees: List[CancellationFeeTier] = Field(default_factory=list)


class ModificationPolicy(BaseModel):
    allow_modifications: bool = False
    modification_deadline: Optional[datetime] = None
    modification_fee: Optional[Decimal] = None
    restrictions: List[str] = Field(default_factory=list)


# ======== Requests ========

class GuestInfo(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    date_of_birth: Optional[date] = None


class GuestDetails(BaseModel):
    adults: int = Field(..., ge=1)
    children: int = Field(default=0, ge=0)
    infants: int = Field(default=0, ge=0)
    guests: List[GuestInfo] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return self.adults + self.children + self.infants


class BookingCreateBase(BaseModel):
    trip_id: Optional[str] = Field(None, max_length=36)
    start_date: date
    end_date: Optional[date] = None
    guest_details: GuestDetails
    contact_email: EmailStr
    contact_phone: str = Field(..., min_length=3, max_length=30)
    special_requests: Optional[str] = Field(None, max_length=2000)
    payment_method_id: str = Field(..., min_length=1, max_length=255)

    @model_validator(mode='after')
    def validate_dates(self):
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError('end_date must not be before start_date')
        return self


class HotelBookingRequest(BookingCreateBase):
    hotel_id: str = Field(..., min_length=1, max_length=100)
    room_id: str = Field(..., min_length=1, max_length=100)
    room_count: int = Field(default=1, ge=1, le=20)

    @model_validator(mode='after')
    def validate_stay(self):
        if self.end_date is None:
            raise ValueError('end_date is required for hotel bookings')
        if self.end_date <= self.start_date:
            raise ValueError('end_date must be after start_date')
        return self


class SeatPreference(BaseModel):
    guest_id: Optional[str] = None
    seat_type: str
    special_requests: Optional[str] = None


class FlightBookingRequest(BookingCreateBase):
    origin_airport: str = Field(..., min_length=3, max_length=10)
    destination_airport: str = Field(..., min_length=3, max_length=10)
    outbound_flight_id: str = Field(..., min_length=1, max_length=255)
    return_flight_id: Optional[str] = Field(None, max_length=255)
    seat_preferences: List[SeatPreference] = Field(default_factory=list)

    @field_validator('origin_airport', 'destination_airport')
    @classmethod
    def upper_airport(cls, v: str) -> str:
        return v.strip().upper()


class CancelBookingRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class ModifyBookingRequest(BaseModel):
    new_start_date: Optional[date] = None
    new_end_date: Optional[date] = None
    special_requests: Optional[str] = Field(None, max_length=2000)

    @model_validator(mode='after')
    def validate_changes(self):
        if self.new_start_date is None and self.new_end_date is None and self.special_requests is None:
            raise ValueError('at least one modification is required')
        if self.new_start_date and self.new_end_date and self.new_end_date < self.new_start_date:
            raise ValueError('new_end_date must not be before new_start_date')
        return self


# ======== Responses ========

class StatusHistoryEntry(BaseModel):
    status: str
    timestamp: str
    reason: Optional[str] = None
    updated_by: str


class BookingItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    item_type: str
    item_name: str
    description: Optional[str] = None
    room_type: Optional[str] = None
    room_count: Optional[int] = None
    flight_number: Optional[str] = None
    airline: Optional[str] = None
    departure_airport: Optional[str] = None
    arrival_airport: Optional[str] = None
    departure_time: Optional[datetime] = None
    arrival_time: Optional[datetime] = None
    seat_class: Optional[str] = None
    unit_price: Decimal
    quantity: int
    total_price: Decimal
    currency: str
    confirmation_code: Optional[str] = None


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    trip_id: Optional[str] = None
    type: str
    status: str
    booking_reference: str
    provider_name: Optional[str] = None
    provider_booking_id: Optional[str] = None
    external_reference: Optional[str] = None
    booking_date: Optional[datetime] = None
    start_date: datetime
    end_date: Optional[datetime] = None
    guest_count: int
    guest_details: Optional[Dict[str, Any]] = None
    total_amount: Decimal
    taxes: Optional[Decimal] = None
    fees: Optional[Decimal] = None
    currency: str
    pending_refund_amount: Optional[Decimal] = None
    contact_email: str
    contact_phone: Optional[str] = None
    special_requests: Optional[str] = None
    cancellation_policy: Optional[Dict[str, Any]] = None
    modification_policy: Optional[Dict[str, Any]] = None
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    items: List[BookingItemResponse] = Field(default_factory=list)
    payments: List[PaymentResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: Optional[datetime] = None


class BookingSummaryResponse(BaseModel):
    """List view: items are included, payments are not."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    status: str
    booking_reference: str
    provider_name: Optional[str] = None
    start_date: datetime
    end_date: Optional[datetime] = None
    total_amount: Decimal
    currency: str
    items: List[BookingItemResponse] = Field(default_factory=list)
    created_at: datetime


class CancellationResponse(BaseModel):
    booking: BookingResponse
    refund_amount: Decimal
    refund_pending: bool = False
