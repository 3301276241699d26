from .base import Base, Column, String, Integer, Boolean, DateTime, Text, Money, new_id


class PricingTier(Base):
    __tablename__ = "pricing_tiers"

    id = Column(String(255), primary_key=True, default=new_id)
    tier_name = Column(String(50), unique=True, index=True, nullable=False)
    display_name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    min_members = Column(Integer, nullable=False)
    max_members = Column(Integer, nullable=True)  # NULL = 不设上限，仅最高档
    monthly_price_usd = Column(Money, nullable=False)
    quarterly_price_usd = Column(Money, nullable=False)
    biannual_price_usd = Column(Money, nullable=False)
    annual_price_usd = Column(Money, nullable=False)
    quarterly_discount_pct = Column(Money, nullable=True)
    biannual_discount_pct = Column(Money, nullable=True)
    annual_discount_pct = Column(Money, nullable=True)
    features = Column(Text, nullable=True)  # JSON 数组
    is_active = Column(Boolean, nullable=False, default=True)
    display_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)

    def is_in_range(self, member_count: int) -> bool:
        if member_count < self.min_members:
            return False
        return self.max_members is None or member_count <= self.max_members
