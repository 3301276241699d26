import json
from datetime import datetime
from typing import Dict, List

from core.errors import ValidationError
from core.events import log_event, E
from core.log import get_logger
from core.models.tenant_notice import TenantNotice

logger = get_logger(__name__)


NOTICE_TEMPLATES: Dict[str, str] = {
    "RENEWAL_SUCCEEDED": "订阅续费成功",
    "PROMO_CREDIT_USED": "已使用 1 个月免费额度",
    "PAYMENT_FAILED": "订阅扣款失败",
    "SUBSCRIPTION_SUSPENDED": "订阅已暂停",
    "SUBSCRIPTION_REACTIVATED": "订阅已恢复",
    "SUBSCRIPTION_CANCELED": "订阅已取消",
    "SUBSCRIPTION_EXPIRED": "订阅已到期",
    "DELETION_WARNING": "数据即将删除提醒",
    "DELETION_ELIGIBLE": "租户数据已进入待删除",
    "RETENTION_EXTENDED": "数据保留期已延长",
    "TIER_CHANGE_COMPLETED": "套餐变更已生效",
    "TIER_CHANGE_FAILED": "套餐变更支付失败",
    "TIER_CHANGE_REFUND_DUE": "已取消的套餐变更收到付款，待退还",
    "ADDON_ACTIVATED": "存储扩容包已生效",
}


def create_notice(session, tenant_id: str, template: str, payload: Dict = None, ref_id: str = None) -> TenantNotice:
    """写入通知发件箱，随当前事务一起提交。"""
    key = str(template or "").strip().upper()
    if key not in NOTICE_TEMPLATES:
        raise ValidationError(f"未知通知模板: {template}")
    notice = TenantNotice(
        tenant_id=str(tenant_id or "").strip(),
        template=key,
        title=NOTICE_TEMPLATES[key],
        payload_json=json.dumps(payload or {}, ensure_ascii=False, default=str),
        status="PENDING",
        ref_id=str(ref_id)[:255] if ref_id else None,
        created_at=datetime.now(),
    )
    session.add(notice)
    session.flush()
    log_event(logger, E.NOTICE_CREATE, tenant_id=tenant_id, template=key, ref_id=ref_id or "")
    return notice


def list_notices(session, tenant_id: str = "", status: str = "", limit: int = 50) -> List[Dict]:
    query = session.query(TenantNotice)
    if tenant_id:
        query = query.filter(TenantNotice.tenant_id == tenant_id)
    if status:
        query = query.filter(TenantNotice.status == status.strip().upper())
    rows = query.order_by(TenantNotice.created_at.desc()).limit(max(1, min(int(limit or 50), 200))).all()
    return [
        {
            "id": n.id,
            "tenant_id": n.tenant_id,
            "template": n.template,
            "title": n.title,
            "payload": json.loads(n.payload_json or "{}"),
            "status": n.status,
            "ref_id": n.ref_id,
            "created_at": n.created_at.isoformat() if n.created_at else None,
        }
        for n in rows
    ]
