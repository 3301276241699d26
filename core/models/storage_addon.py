from .base import Base, Column, String, Integer, Boolean, DateTime, Text, Money, new_id


class StorageAddon(Base):
    __tablename__ = "storage_addons"

    id = Column(String(255), primary_key=True, default=new_id)
    name = Column(String(50), unique=True, index=True, nullable=False)
    display_name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    storage_gb = Column(Integer, nullable=False)
    price_usd = Column(Money, nullable=False)  # 每月价格
    is_active = Column(Boolean, nullable=False, default=True)
    display_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
