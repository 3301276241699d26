import json
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional

from core.billing_utils import money
from core.errors import ConcurrencyConflict, NotFoundError, ValidationError
from core.events import log_event, E
from core.log import get_logger
from core.models.billing_interval import BillingInterval
from core.models.pricing_tier import PricingTier
from core.models.storage_addon import StorageAddon

logger = get_logger(__name__)


INTERVAL_DEFINITIONS: Dict[str, Dict] = {
    "MONTHLY": {"display_name": "Monthly", "months": 1, "display_order": 1},
    "QUARTERLY": {"display_name": "Quarterly", "months": 3, "display_order": 2},
    "BIANNUAL": {"display_name": "Every 6 Months", "months": 6, "display_order": 3},
    "ANNUAL": {"display_name": "Annual", "months": 12, "display_order": 4},
}

# 价格列与周期一一对应
_PRICE_FIELD_BY_INTERVAL = {
    "MONTHLY": "monthly_price_usd",
    "QUARTERLY": "quarterly_price_usd",
    "BIANNUAL": "biannual_price_usd",
    "ANNUAL": "annual_price_usd",
}

DEFAULT_TIERS: List[Dict] = [
    {
        "tier_name": "TIER_1",
        "display_name": "Small Church (1-200)",
        "min_members": 1,
        "max_members": 200,
        "prices": ("5.99", "16.47", "31.99", "59.99"),
    },
    {
        "tier_name": "TIER_2",
        "display_name": "Growing Church (201-500)",
        "min_members": 201,
        "max_members": 500,
        "prices": ("9.99", "27.47", "53.99", "99.99"),
    },
    {
        "tier_name": "TIER_3",
        "display_name": "Medium Church (501-1000)",
        "min_members": 501,
        "max_members": 1000,
        "prices": ("14.99", "41.22", "80.99", "149.99"),
    },
    {
        "tier_name": "TIER_4",
        "display_name": "Large Church (1001-2500)",
        "min_members": 1001,
        "max_members": 2500,
        "prices": ("19.99", "54.97", "107.99", "199.99"),
    },
    {
        "tier_name": "TIER_5",
        "display_name": "Mega Church (2500+)",
        "min_members": 2501,
        "max_members": None,
        "prices": ("29.99", "82.47", "161.99", "299.99"),
    },
]

DEFAULT_ADDONS: List[Dict] = [
    {"name": "STORAGE_5GB", "display_name": "+5 GB Storage", "storage_gb": 5, "price_usd": "1.99"},
    {"name": "STORAGE_10GB", "display_name": "+10 GB Storage", "storage_gb": 10, "price_usd": "3.49"},
    {"name": "STORAGE_25GB", "display_name": "+25 GB Storage", "storage_gb": 25, "price_usd": "7.99"},
    {"name": "STORAGE_50GB", "display_name": "+50 GB Storage", "storage_gb": 50, "price_usd": "14.99"},
]


def normalize_interval_name(name: str) -> str:
    value = str(name or "").strip().upper()
    if value not in INTERVAL_DEFINITIONS:
        raise ValidationError(f"不支持的计费周期: {name}")
    return value


def discount_pct(monthly_price, period_price, months: int) -> Decimal:
    """相对按月付费的折扣百分比。"""
    full = Decimal(str(monthly_price)) * int(months)
    if full <= 0:
        return Decimal("0.00")
    pct = (full - Decimal(str(period_price))) / full * 100
    return pct.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def seed_default_catalog(session) -> Dict:
    """写入计费周期、默认档位与存储扩容包，已存在的记录不覆盖。"""
    now = datetime.now()
    created = {"intervals": 0, "tiers": 0, "addons": 0}
    existing = {x.name for x in session.query(BillingInterval).all()}
    for name, item in INTERVAL_DEFINITIONS.items():
        if name in existing:
            continue
        session.add(BillingInterval(name=name, is_active=True, **item))
        created["intervals"] += 1

    if session.query(PricingTier).count() == 0:
        for order, item in enumerate(DEFAULT_TIERS, start=1):
            create_tier(
                session,
                tier_name=item["tier_name"],
                display_name=item["display_name"],
                min_members=item["min_members"],
                max_members=item["max_members"],
                prices=item["prices"],
                display_order=order,
                commit=False,
            )
            created["tiers"] += 1

    if session.query(StorageAddon).count() == 0:
        for order, item in enumerate(DEFAULT_ADDONS, start=1):
            session.add(
                StorageAddon(
                    name=item["name"],
                    display_name=item["display_name"],
                    description=f"额外 {item['storage_gb']} GB 存储空间，按订阅周期续费",
                    storage_gb=item["storage_gb"],
                    price_usd=Decimal(item["price_usd"]),
                    is_active=True,
                    display_order=order,
                    created_at=now,
                    updated_at=now,
                )
            )
            created["addons"] += 1
    session.commit()
    if any(created.values()):
        log_event(logger, E.SYSTEM_CATALOG_SEED, **created)
    return created


def create_tier(
    session,
    tier_name: str,
    display_name: str,
    min_members: int,
    max_members: Optional[int],
    prices: Iterable,
    description: str = "",
    features: List[str] = None,
    display_order: int = 0,
    is_active: bool = True,
    commit: bool = True,
) -> PricingTier:
    monthly, quarterly, biannual, annual = [money(p) for p in prices]
    if min_members < 1:
        raise ValidationError("min_members 必须 >= 1")
    if max_members is not None and max_members < min_members:
        raise ValidationError("max_members 不能小于 min_members")
    if monthly <= 0:
        raise ValidationError("月价必须大于 0")
    name = str(tier_name or "").strip().upper()
    if session.query(PricingTier).filter(PricingTier.tier_name == name).first():
        raise ConcurrencyConflict(f"档位 {name} 已存在")
    now = datetime.now()
    tier = PricingTier(
        tier_name=name,
        display_name=display_name,
        description=description or None,
        min_members=int(min_members),
        max_members=max_members,
        monthly_price_usd=monthly,
        quarterly_price_usd=quarterly,
        biannual_price_usd=biannual,
        annual_price_usd=annual,
        quarterly_discount_pct=discount_pct(monthly, quarterly, 3),
        biannual_discount_pct=discount_pct(monthly, biannual, 6),
        annual_discount_pct=discount_pct(monthly, annual, 12),
        features=json.dumps(features or [], ensure_ascii=False),
        is_active=is_active,
        display_order=display_order,
        created_at=now,
        updated_at=now,
    )
    session.add(tier)
    if commit:
        session.commit()
    else:
        session.flush()
    return tier


def get_tier_by_name(session, tier_name: str) -> PricingTier:
    name = str(tier_name or "").strip().upper()
    tier = session.query(PricingTier).filter(PricingTier.tier_name == name).first()
    if not tier:
        raise NotFoundError(f"档位不存在: {tier_name}")
    return tier


def get_interval_by_name(session, interval_name: str) -> BillingInterval:
    name = normalize_interval_name(interval_name)
    interval = session.query(BillingInterval).filter(BillingInterval.name == name).first()
    if not interval:
        raise NotFoundError(f"计费周期未初始化: {name}")
    return interval


def list_active_tiers(session) -> List[PricingTier]:
    return (
        session.query(PricingTier)
        .filter(PricingTier.is_active == True)  # noqa: E712
        .order_by(PricingTier.min_members)
        .all()
    )


def find_tier_for_member_count(session, member_count: int) -> PricingTier:
    count = max(1, int(member_count or 0))
    for tier in list_active_tiers(session):
        if tier.is_in_range(count):
            return tier
    raise NotFoundError(f"没有覆盖 {count} 名成员的有效档位")


def validate_tier_partition(tiers: List[PricingTier]) -> List[str]:
    """检查有效档位是否无缝覆盖 1..∞，返回问题列表（空列表表示通过）。"""
    problems = []
    ordered = sorted([t for t in tiers if t.is_active], key=lambda t: t.min_members)
    if not ordered:
        return ["没有有效档位"]
    if ordered[0].min_members != 1:
        problems.append(f"{ordered[0].tier_name} 起始成员数应为 1")
    for prev, cur in zip(ordered, ordered[1:]):
        if prev.max_members is None:
            problems.append(f"{prev.tier_name} 不设上限但不是最高档")
            continue
        if cur.min_members <= prev.max_members:
            problems.append(f"{prev.tier_name} 与 {cur.tier_name} 成员区间重叠")
        elif cur.min_members > prev.max_members + 1:
            problems.append(f"{prev.tier_name} 与 {cur.tier_name} 之间存在空档")
    if ordered[-1].max_members is not None:
        problems.append(f"最高档 {ordered[-1].tier_name} 应不设上限")
    return problems


def get_interval_price(tier: PricingTier, interval_name: str) -> Decimal:
    field = _PRICE_FIELD_BY_INTERVAL[normalize_interval_name(interval_name)]
    return money(getattr(tier, field))


def get_monthly_equivalent(tier: PricingTier, interval_name: str) -> Decimal:
    """周期总价折算到每月（不取整，供按天计算使用）。"""
    name = normalize_interval_name(interval_name)
    months = INTERVAL_DEFINITIONS[name]["months"]
    return Decimal(str(getattr(tier, _PRICE_FIELD_BY_INTERVAL[name]))) / months


def get_period_price(tier: PricingTier, interval_name: str, months: int) -> Decimal:
    """把 interval_name 的月均价换算成 months 个月的价格。"""
    return get_monthly_equivalent(tier, interval_name) * int(months)


def calculate_savings(tier: PricingTier, interval_name: str) -> Decimal:
    name = normalize_interval_name(interval_name)
    months = INTERVAL_DEFINITIONS[name]["months"]
    return money(Decimal(str(tier.monthly_price_usd)) * months - get_interval_price(tier, name))


def tier_to_dict(tier: PricingTier) -> Dict:
    try:
        features = json.loads(tier.features or "[]")
    except Exception:
        features = []
    data = {
        "tier_name": tier.tier_name,
        "display_name": tier.display_name,
        "description": tier.description or "",
        "min_members": tier.min_members,
        "max_members": tier.max_members,
        "features": features,
        "is_active": bool(tier.is_active),
        "display_order": tier.display_order,
        "prices": {},
    }
    for name in INTERVAL_DEFINITIONS:
        data["prices"][name] = {
            "price_usd": str(get_interval_price(tier, name)),
            "monthly_equivalent_usd": str(money(get_monthly_equivalent(tier, name))),
            "savings_usd": str(calculate_savings(tier, name)),
        }
    data["prices"]["QUARTERLY"]["discount_pct"] = str(tier.quarterly_discount_pct or 0)
    data["prices"]["BIANNUAL"]["discount_pct"] = str(tier.biannual_discount_pct or 0)
    data["prices"]["ANNUAL"]["discount_pct"] = str(tier.annual_discount_pct or 0)
    return data


def get_pricing_catalog(session, snapshot=None) -> Dict:
    tiers = [tier_to_dict(t) for t in list_active_tiers(session)]
    if snapshot is not None:
        for tier in tiers:
            for price in tier["prices"].values():
                price["price_display"] = str(snapshot.to_display(price["price_usd"]))
    intervals = (
        session.query(BillingInterval)
        .filter(BillingInterval.is_active == True)  # noqa: E712
        .order_by(BillingInterval.display_order)
        .all()
    )
    return {
        "tiers": tiers,
        "intervals": [
            {"name": x.name, "display_name": x.display_name, "months": x.months} for x in intervals
        ],
        "display_currency": snapshot.display_currency if snapshot is not None else None,
        "exchange_rate": str(snapshot.rate) if snapshot is not None else None,
    }
