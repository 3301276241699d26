from .base import Base, Column, String, Integer, Boolean, new_id


class BillingInterval(Base):
    """计费周期参考数据（MONTHLY/QUARTERLY/BIANNUAL/ANNUAL），启动时写入，运行期只读。"""

    __tablename__ = "billing_intervals"

    id = Column(String(255), primary_key=True, default=new_id)
    name = Column(String(20), unique=True, index=True, nullable=False)
    display_name = Column(String(50), nullable=False)
    months = Column(Integer, nullable=False)
    display_order = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
