import enum

from .base import (
    Base, Column, String, Integer, Boolean, Date, DateTime, ForeignKey,
    relationship, enum_type, Money, new_id,
)


class AddonStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    CANCELED = "CANCELED"
    SUSPENDED = "SUSPENDED"


class TenantAddon(Base):
    __tablename__ = "tenant_addons"

    id = Column(String(255), primary_key=True, default=new_id)
    tenant_id = Column(String(64), index=True, nullable=False)
    addon_id = Column(String(255), ForeignKey("storage_addons.id"), nullable=False)
    # "tenant:addon"，PENDING/ACTIVE/SUSPENDED 时写入，取消或支付失败后置空
    ownership_key = Column(String(330), unique=True, nullable=True)
    purchase_price = Column(Money, nullable=False)  # 购买时锁定的月价
    purchase_reference = Column(String(100), unique=True, nullable=False)
    is_prorated = Column(Boolean, nullable=False, default=False)
    prorated_amount = Column(Money, nullable=True)
    prorated_days = Column(Integer, nullable=True)
    current_period_start = Column(Date, nullable=True)
    current_period_end = Column(Date, nullable=True)
    next_renewal_date = Column(Date, nullable=True)
    status = Column(enum_type(AddonStatus), nullable=False, default=AddonStatus.PENDING, index=True)
    purchased_at = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String(500), nullable=True)
    suspended_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)

    addon = relationship("StorageAddon", lazy="joined")
