from datetime import datetime
from typing import Dict, List

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from core import subscription_service
from core.errors import ConcurrencyConflict, NotFoundError, ValidationError
from core.events import log_event, E
from core.log import get_logger
from core.models.partnership_code import PartnershipCode, PartnershipCodeUsage

logger = get_logger(__name__)


def _normalize_code(code: str) -> str:
    return str(code or "").strip().upper()


def create_partnership_code(
    session,
    code: str,
    grace_period_days: int,
    description: str = "",
    max_uses: int = None,
    expires_at: datetime = None,
    created_by: str = "",
) -> PartnershipCode:
    value = _normalize_code(code)
    if not value:
        raise ValidationError("合作码不能为空")
    if int(grace_period_days or 0) <= 0:
        raise ValidationError("宽限天数必须大于 0")
    if max_uses is not None and int(max_uses) <= 0:
        raise ValidationError("max_uses 必须大于 0")
    if session.query(PartnershipCode).filter(PartnershipCode.code == value).first():
        raise ConcurrencyConflict(f"合作码 {value} 已存在")
    now = datetime.now()
    row = PartnershipCode(
        code=value,
        description=(description or "")[:500] or None,
        grace_period_days=int(grace_period_days),
        is_active=True,
        expires_at=expires_at,
        max_uses=int(max_uses) if max_uses is not None else None,
        current_uses=0,
        created_by=(created_by or "")[:100] or None,
        created_at=now,
        updated_at=now,
    )
    session.add(row)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ConcurrencyConflict(f"合作码 {value} 已存在")
    log_event(logger, E.PARTNERSHIP_CODE_CREATE, code=value, days=row.grace_period_days, max_uses=row.max_uses)
    return row


def get_code(session, code: str) -> PartnershipCode:
    row = session.query(PartnershipCode).filter(PartnershipCode.code == _normalize_code(code)).first()
    if not row:
        raise NotFoundError("合作码不存在")
    return row


def _ensure_usable(row: PartnershipCode, now: datetime) -> None:
    if not row.is_active:
        raise ValidationError("合作码已停用")
    if row.expires_at is not None and row.expires_at <= now:
        raise ValidationError("合作码已过期")
    if row.max_uses is not None and int(row.current_uses or 0) >= int(row.max_uses):
        raise ValidationError("合作码使用次数已达上限")


def redeem_partnership_code(session, tenant_id: str, code: str, now: datetime = None) -> Dict:
    """
    兑换合作码：每个租户每个码只能兑换一次，宽限天数取当前值与码面值的较大者。
    使用次数通过条件 UPDATE 原子递增，并发兑换不会超出上限。
    """
    now = now or datetime.now()
    row = get_code(session, code)
    _ensure_usable(row, now)
    sub = subscription_service.get_subscription(session, tenant_id)
    exists = session.query(PartnershipCodeUsage).filter(
        PartnershipCodeUsage.code_id == row.id,
        PartnershipCodeUsage.tenant_id == sub.tenant_id,
    ).first()
    if exists:
        raise ConcurrencyConflict("该租户已兑换过此合作码")

    updated = (
        session.query(PartnershipCode)
        .filter(
            PartnershipCode.id == row.id,
            or_(PartnershipCode.max_uses == None, PartnershipCode.current_uses < PartnershipCode.max_uses),  # noqa: E711
        )
        .update({PartnershipCode.current_uses: PartnershipCode.current_uses + 1}, synchronize_session=False)
    )
    if not updated:
        session.rollback()
        raise ValidationError("合作码使用次数已达上限")
    session.add(
        PartnershipCodeUsage(
            code_id=row.id,
            tenant_id=sub.tenant_id,
            grace_period_days_granted=int(row.grace_period_days),
            used_at=now,
        )
    )
    subscription_service.grant_grace_period(session, sub, row.grace_period_days, granted_by=f"code:{row.code}", commit=False)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ConcurrencyConflict("该租户已兑换过此合作码")
    session.refresh(row)
    log_event(logger, E.SUBSCRIPTION_GRACE_GRANT, tenant_id=sub.tenant_id, days=sub.grace_period_days, by=f"code:{row.code}")
    log_event(logger, E.PARTNERSHIP_CODE_REDEEM, tenant_id=sub.tenant_id, code=row.code, days=row.grace_period_days)
    return {
        "code": row.code,
        "tenant_id": sub.tenant_id,
        "grace_period_days": int(sub.grace_period_days or 0),
        "current_uses": int(row.current_uses or 0),
    }


def deactivate_code(session, code: str) -> PartnershipCode:
    row = get_code(session, code)
    row.is_active = False
    row.updated_at = datetime.now()
    session.commit()
    return row


def code_to_dict(row: PartnershipCode) -> Dict:
    return {
        "code": row.code,
        "description": row.description or "",
        "grace_period_days": row.grace_period_days,
        "is_active": bool(row.is_active),
        "expires_at": row.expires_at.isoformat() if row.expires_at else None,
        "max_uses": row.max_uses,
        "current_uses": int(row.current_uses or 0),
        "created_by": row.created_by or "",
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


def list_codes(session, active_only: bool = False) -> List[Dict]:
    query = session.query(PartnershipCode)
    if active_only:
        query = query.filter(PartnershipCode.is_active == True)  # noqa: E712
    return [code_to_dict(x) for x in query.order_by(PartnershipCode.created_at.desc()).all()]


def list_code_usages(session, code: str) -> List[Dict]:
    row = get_code(session, code)
    usages = (
        session.query(PartnershipCodeUsage)
        .filter(PartnershipCodeUsage.code_id == row.id)
        .order_by(PartnershipCodeUsage.used_at.desc())
        .all()
    )
    return [
        {
            "tenant_id": u.tenant_id,
            "grace_period_days_granted": u.grace_period_days_granted,
            "used_at": u.used_at.isoformat() if u.used_at else None,
        }
        for u in usages
    ]
