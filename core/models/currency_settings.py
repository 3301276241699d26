from .base import Base, Column, String, Integer, Boolean, DateTime, Text, Rate, new_id


class CurrencySettings(Base):
    """全局唯一的汇率配置行，version 作为乐观锁版本号。"""

    __tablename__ = "currency_settings"

    id = Column(String(255), primary_key=True, default=new_id)
    base_currency = Column(String(8), nullable=False, default="USD")
    display_currency = Column(String(8), nullable=False, default="GHS")
    exchange_rate = Column(Rate, nullable=False)
    previous_rate = Column(Rate, nullable=True)
    version = Column(Integer, nullable=False)
    show_both_currencies = Column(Boolean, nullable=False, default=True)
    primary_display_currency = Column(String(8), nullable=False, default="GHS")
    last_updated_by = Column(String(100), nullable=True)
    last_updated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime)

    __mapper_args__ = {"version_id_col": version}


class CurrencyRateChange(Base):
    """汇率变更历史，只追加。"""

    __tablename__ = "currency_rate_changes"

    id = Column(String(255), primary_key=True, default=new_id)
    old_rate = Column(Rate, nullable=True)
    new_rate = Column(Rate, nullable=False)
    version = Column(Integer, nullable=False)
    changed_by = Column(String(100), nullable=True)
    note = Column(Text, nullable=True)
    changed_at = Column(DateTime, nullable=False, index=True)
