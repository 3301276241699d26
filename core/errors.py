"""计费领域异常。

路由层按类型映射 HTTP 状态码：
ValidationError → 400，NotFoundError → 404，PaymentFailure → 402，
ConcurrencyConflict → 409。
"""


class BillingError(Exception):
    """计费相关异常基类。"""


class ValidationError(BillingError, ValueError):
    """入参或状态不满足前置条件。"""


class InvalidTransition(ValidationError):
    """订阅状态机不允许的状态迁移。"""

    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"订阅状态不允许从 {current} 迁移到 {target}")


class NotFoundError(ValidationError):
    pass


class PaymentFailure(BillingError):
    """支付网关拒绝、超时或返回异常。"""

    def __init__(self, message: str, reference: str = None):
        self.reference = reference
        super().__init__(message)


class ConcurrencyConflict(BillingError):
    """并发写冲突：重复的待处理记录、唯一约束或乐观锁版本过期。"""


class SchedulerJobFailure(BillingError):
    """调度批次整体失败（单个租户的失败不会抛出此异常）。"""
