from .base import (
    Base, Column, String, Integer, Boolean, DateTime, ForeignKey, UniqueConstraint, new_id,
)


class PartnershipCode(Base):
    __tablename__ = "partnership_codes"

    id = Column(String(255), primary_key=True, default=new_id)
    code = Column(String(50), unique=True, index=True, nullable=False)  # 统一大写存储
    description = Column(String(500), nullable=True)
    grace_period_days = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime, nullable=True)
    max_uses = Column(Integer, nullable=True)  # NULL = 不限次数
    current_uses = Column(Integer, nullable=False, default=0)
    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)


class PartnershipCodeUsage(Base):
    __tablename__ = "partnership_code_usages"
    __table_args__ = (UniqueConstraint("code_id", "tenant_id", name="uq_partnership_code_tenant"),)

    id = Column(String(255), primary_key=True, default=new_id)
    code_id = Column(String(255), ForeignKey("partnership_codes.id"), nullable=False)
    tenant_id = Column(String(64), index=True, nullable=False)
    grace_period_days_granted = Column(Integer, nullable=False)
    used_at = Column(DateTime, nullable=False)
