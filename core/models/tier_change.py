import enum

from .base import Base, Column, String, Integer, DateTime, Text, enum_type, Money, Rate, new_id
from .billing_payment import PaymentStatus


class TierChangeType(str, enum.Enum):
    TIER_UPGRADE = "TIER_UPGRADE"
    INTERVAL_CHANGE = "INTERVAL_CHANGE"
    COMBINED = "COMBINED"


class TierChangeRecord(Base):
    """套餐/周期变更审计记录，每次尝试一行，生成后金额字段不再修改。"""

    __tablename__ = "tier_change_records"

    id = Column(String(255), primary_key=True, default=new_id)
    tenant_id = Column(String(64), index=True, nullable=False)
    # PENDING 期间写入 tenant_id，完成/失败后置空；唯一约束保证每个租户最多一条待支付
    pending_tenant_id = Column(String(64), unique=True, nullable=True)

    old_tier_name = Column(String(50), nullable=False)
    new_tier_name = Column(String(50), nullable=False)
    old_interval_name = Column(String(20), nullable=False)
    new_interval_name = Column(String(20), nullable=False)
    change_type = Column(enum_type(TierChangeType), nullable=False)

    days_used = Column(Integer, nullable=False, default=0)
    days_remaining = Column(Integer, nullable=False, default=0)
    period_length_days = Column(Integer, nullable=False, default=0)

    old_price_usd = Column(Money, nullable=False)
    new_price_usd = Column(Money, nullable=False)
    unused_credit_usd = Column(Money, nullable=False)
    prorated_charge_usd = Column(Money, nullable=False)
    net_charge_usd = Column(Money, nullable=False)
    credit_owed_usd = Column(Money, nullable=True)
    net_charge_display = Column(Money, nullable=False)
    display_currency = Column(String(8), nullable=False)
    exchange_rate = Column(Rate, nullable=False)
    rate_version = Column(Integer, nullable=False)

    payment_reference = Column(String(100), unique=True, index=True, nullable=False)
    payment_status = Column(enum_type(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    gateway_transaction_id = Column(String(128), nullable=True)
    failure_reason = Column(String(500), nullable=True)
    reason = Column(Text, nullable=True)
    requested_by = Column(String(100), nullable=True)
    requested_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
