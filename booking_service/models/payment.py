import uuid
import enum
from sqlalchemy import Column, String, Integer, Numeric, Text, ForeignKey, DateTime, Index, JSON
from sqlalchemy.orm import relationship

from ..database import Base
from ..utils.clock import utcnow


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class PaymentMethod(str, enum.Enum):
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    PAYPAL = "paypal"
    APPLE_PAY = "apple_pay"
    GOOGLE_PAY = "google_pay"
    BANK_TRANSFER = "bank_transfer"


# The gateway is authoritative: a succeeded charge may overwrite FAILED,
# but nothing moves a captured payment back.
PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PROCESSING, PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.PROCESSING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.PENDING},
    PaymentStatus.FAILED: {PaymentStatus.COMPLETED},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED},
    PaymentStatus.PARTIALLY_REFUNDED: {PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED},
    PaymentStatus.REFUNDED: set(),
}

class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), nullable=True)
    status = Column(String(30), nullable=False, default=PaymentStatus.PENDING.value)
    method = Column(String(30), nullable=False, default=PaymentMethod.CREDIT_CARD.value)

    # Stripe identifiers
    stripe_payment_intent_id = Column(String(255), nullable=True, unique=True)
    stripe_charge_id = Column(String(255), nullable=True)
    stripe_customer_id = Column(String(255), nullable=True)
    transaction_id = Column(String(255), nullable=True)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    processing_fee = Column(Numeric(10, 2), default=0)
    refunded_amount = Column(Numeric(10, 2), nullable=False, default=0)

    description = Column(Text, nullable=True)
    payment_details = Column(JSON, nullable=True)  # card summary
    receipt_url = Column(String(500), nullable=True)
    failure_reason = Column(Text, nullable=True)
    payment_metadata = Column("metadata", JSON, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    booking = relationship("Booking", back_populates="payments")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_payment_status_updated", "status", "updated_at"),
    )

    def __repr__(self):
        return f"<Payment {self.id} {self.status} {self.amount} {self.currency}>"
