import uuid
import enum
from sqlalchemy import Column, String, Integer, Numeric, Text, ForeignKey, DateTime, Index, JSON
from sqlalchemy.orm import relationship

from ..database import Base
from ..utils.clock import utcnow


class BookingType(str, enum.Enum):
    ACCOMMODATION = "accommodation"
    FLIGHT = "flight"
    ACTIVITY = "activity"
    RESTAURANT = "restaurant"
    TRANSPORT = "transport"
    PACKAGE = "package"


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


# Legal next states per current state. CONFIRMED -> CONFIRMED is a recorded modification.
BOOKING_TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.FAILED},
    BookingStatus.CONFIRMED: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED, BookingStatus.COMPLETED},
    BookingStatus.CANCELLED: set(),
    BookingStatus.COMPLETED: set(),
    BookingStatus.FAILED: set(),
}


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    trip_id = Column(String(36), nullable=True)
    type = Column(String(30), nullable=False)
    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value)
    booking_reference = Column(String(32), nullable=False, unique=True)

    # Supplier tracking
    provider_name = Column(String(50), nullable=True)
    provider_booking_id = Column(String(255), nullable=True)  # supplier-side booking id
    external_reference = Column(String(255), nullable=True)  # supplier confirmation code

    booking_date = Column(DateTime, default=utcnow)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=True)

    guest_count = Column(Integer, default=1)
    guest_details = Column(JSON, nullable=True)

    total_amount = Column(Numeric(10, 2), nullable=False, default=0)
    taxes = Column(Numeric(10, 2), default=0)
    fees = Column(Numeric(10, 2), default=0)
    currency = Column(String(3), nullable=False, default="USD")
    price_breakdown = Column(JSON, nullable=True)
    # Cancellation refund owed but not yet confirmed by the gateway
    pending_refund_amount = Column(Numeric(10, 2), nullable=True)

    contact_email = Column(String(255), nullable=False)
    contact_phone = Column(String(30), nullable=True)
    special_requests = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    cancellation_policy = Column(JSON, nullable=True)
    modification_policy = Column(JSON, nullable=True)
    status_history = Column(JSON, nullable=False, default=list)

    # Optimistic lock counter, bumped by the ORM on every UPDATE
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    items = relationship("BookingItem", back_populates="booking", cascade="all, delete-orphan",
                         order_by="BookingItem.created_at")
    payments = relationship("Payment", back_populates="booking", order_by="Payment.created_at")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_booking_provider_booking_id", "provider_booking_id"),
        Index("ix_booking_user_created", "user_id", "created_at"),
        Index("ix_booking_status", "status"),
    )

    def __repr__(self):
        return f"<Booking {self.booking_reference} {self.status}>"


class BookingItem(Base):
    __tablename__ = "booking_items"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    item_type = Column(String(30), nullable=False)  # room, flight, activity, ...
    item_name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # Accommodation
    room_type = Column(String(100), nullable=True)
    room_count = Column(Integer, nullable=True)

    # Flight
    flight_number = Column(String(20), nullable=True)
    airline = Column(String(100), nullable=True)
    departure_airport = Column(String(10), nullable=True)
    arrival_airport = Column(String(10), nullable=True)
    departure_time = Column(DateTime, nullable=True)
    arrival_time = Column(DateTime, nullable=True)
    seat_class = Column(String(20), nullable=True)

    # Activity
    activity_date = Column(DateTime, nullable=True)
    activity_time = Column(String(10), nullable=True)
    participant_count = Column(Integer, nullable=True)

    unit_price = Column(Numeric(10, 2), nullable=False, default=0)
    quantity = Column(Integer, nullable=False, default=1)
    total_price = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")

    confirmation_code = Column(String(100), nullable=True)
    vendor_details = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    booking = relationship("Booking", back_populates="items")

    def __repr__(self):
        return f"<BookingItem {self.item_type} {self.item_name}>"
