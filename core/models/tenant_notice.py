from .base import Base, Column, String, DateTime, Text, new_id


class TenantNotice(Base):
    """通知发件箱：计费模块只负责写入，短信/邮件投递由外部通知服务消费。"""

    __tablename__ = "tenant_notices"

    id = Column(String(255), primary_key=True, default=new_id)
    tenant_id = Column(String(64), index=True, nullable=False)
    template = Column(String(64), index=True, nullable=False)
    title = Column(String(300))
    payload_json = Column(Text)
    status = Column(String(16), nullable=False, default="PENDING")  # PENDING/SENT/FAILED
    ref_id = Column(String(255), nullable=True)
    created_at = Column(DateTime)
    sent_at = Column(DateTime, nullable=True)
