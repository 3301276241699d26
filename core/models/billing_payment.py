import enum

from .base import Base, Column, String, DateTime, Text, enum_type, Money, Rate, new_id


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class PaymentType(str, enum.Enum):
    RENEWAL = "RENEWAL"
    ADDON_PURCHASE = "ADDON_PURCHASE"


class BillingPayment(Base):
    __tablename__ = "billing_payments"

    id = Column(String(255), primary_key=True, default=new_id)
    reference = Column(String(100), unique=True, index=True, nullable=False)
    tenant_id = Column(String(64), index=True, nullable=False)
    payment_type = Column(enum_type(PaymentType, length=30), nullable=False)
    amount_usd = Column(Money, nullable=False)
    amount_display = Column(Money, nullable=True)
    currency = Column(String(8), nullable=False, default="USD")
    exchange_rate = Column(Rate, nullable=True)
    status = Column(enum_type(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    gateway_transaction_id = Column(String(128), nullable=True)
    failure_reason = Column(String(500), nullable=True)
    metadata_json = Column(Text, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
