# 计费目录
from .pricing_tier import PricingTier
from .billing_interval import BillingInterval
from .storage_addon import StorageAddon
from .currency_settings import CurrencySettings, CurrencyRateChange
# 租户订阅
from .tenant_subscription import TenantSubscription, SubscriptionStatus
from .tenant_addon import TenantAddon, AddonStatus
from .tier_change import TierChangeRecord, TierChangeType
from .billing_payment import BillingPayment, PaymentStatus, PaymentType
from .partnership_code import PartnershipCode, PartnershipCodeUsage
from .tenant_notice import TenantNotice
# 调度台账
from .job_execution import JobExecution, JobExecutionFailure, JobStatus
# 导入基础模型
from .base import *
