import enum

from .base import (
    Base, Column, String, Integer, Boolean, Date, DateTime, Text, ForeignKey,
    relationship, enum_type, new_id,
)


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    SUSPENDED = "SUSPENDED"
    CANCELED = "CANCELED"


class TenantSubscription(Base):
    __tablename__ = "tenant_subscriptions"

    id = Column(String(255), primary_key=True, default=new_id)
    tenant_id = Column(String(64), unique=True, index=True, nullable=False)
    tier_id = Column(String(255), ForeignKey("pricing_tiers.id"), nullable=False)
    interval_id = Column(String(255), ForeignKey("billing_intervals.id"), nullable=False)
    status = Column(enum_type(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE, index=True)

    current_period_start = Column(Date, nullable=True)
    current_period_end = Column(Date, nullable=True)  # 不含当天，续费订阅等于 next_billing_date
    next_billing_date = Column(Date, nullable=True, index=True)
    auto_renew = Column(Boolean, nullable=False, default=True)

    grace_period_days = Column(Integer, nullable=False, default=0)
    failed_payment_attempts = Column(Integer, nullable=False, default=0)
    last_failure_reason = Column(String(500), nullable=True)

    free_months_remaining = Column(Integer, nullable=False, default=0)
    promotional_note = Column(String(500), nullable=True)
    promotional_granted_by = Column(String(100), nullable=True)
    promotional_granted_at = Column(DateTime, nullable=True)

    suspended_at = Column(DateTime, nullable=True)
    data_retention_end_date = Column(Date, nullable=True)
    retention_extension_days = Column(Integer, nullable=False, default=0)
    retention_extension_note = Column(Text, nullable=True)
    deletion_warning_sent_at = Column(DateTime, nullable=True)
    deletion_eligible_at = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)

    # 支付网关（Paystack）侧标识
    gateway_customer_code = Column(String(100), nullable=True)
    gateway_subscription_code = Column(String(100), nullable=True)
    gateway_authorization_code = Column(String(100), nullable=True)
    card_fingerprint = Column(String(100), nullable=True)
    card_last4 = Column(String(4), nullable=True)
    card_brand = Column(String(30), nullable=True)

    created_at = Column(DateTime)
    updated_at = Column(DateTime)

    tier = relationship("PricingTier", lazy="joined")
    interval = relationship("BillingInterval", lazy="joined")
