"""
core/payment_gateway.py — 支付网关适配

只用到网关的三个能力：
  authorize       发起一次性支付（返回支付链接，结果通过 webhook 回来）
  charge_recurring 用已保存的授权码代扣（同步返回结果）
  refund          退款

billing.gateway.channel 选择实现：mock（默认，测试/演示）或 paystack。
"""

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

import requests

from core.config import cfg
from core.errors import PaymentFailure
from core.events import log_event, E
from core.log import get_logger

logger = get_logger(__name__)


@dataclass
class ChargeResult:
    success: bool
    transaction_id: str = ""
    message: str = ""


@dataclass
class Authorization:
    reference: str
    authorization_url: str = ""
    access_code: str = ""


def _to_minor_units(amount) -> int:
    # Paystack 以最小货币单位（分/pesewas）计价
    return int((Decimal(str(amount)) * 100).to_integral_value())


class PaymentGateway:
    channel = "base"

    def authorize(self, tenant_id: str, amount, currency: str, reference: str, email: str = "") -> Authorization:
        raise NotImplementedError

    def charge_recurring(self, authorization_code: str, amount, currency: str, reference: str, email: str = "") -> ChargeResult:
        raise NotImplementedError

    def refund(self, transaction_id: str, amount=None) -> ChargeResult:
        raise NotImplementedError


class PaystackGateway(PaymentGateway):
    channel = "paystack"

    def __init__(self, secret_key: str = None, base_url: str = None, timeout: float = None):
        self.secret_key = secret_key or str(cfg.get("billing.gateway.secret_key", ""))
        self.base_url = (base_url or str(cfg.get("billing.gateway.base_url", "https://api.paystack.co"))).rstrip("/")
        self.timeout = float(timeout or cfg.get("billing.gateway.timeout_seconds", 30))

    def _headers(self) -> Dict:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _post(self, path: str, payload: Dict) -> Dict:
        resp = requests.post(f"{self.base_url}{path}", json=payload, headers=self._headers(), timeout=self.timeout)
        try:
            data = resp.json()
        except ValueError:
            data = {"status": False, "message": resp.text[:300]}
        if resp.status_code >= 400 and data.get("status") is not False:
            data = {"status": False, "message": f"HTTP {resp.status_code}"}
        return data

    def authorize(self, tenant_id: str, amount, currency: str, reference: str, email: str = "") -> Authorization:
        payload = {
            "email": email or f"{tenant_id}@tenants.invalid",
            "amount": _to_minor_units(amount),
            "currency": currency,
            "reference": reference,
            "metadata": {"tenant_id": tenant_id},
        }
        try:
            data = self._post("/transaction/initialize", payload)
        except requests.RequestException as e:
            raise PaymentFailure(f"网关请求失败: {e}", reference=reference)
        if not data.get("status"):
            raise PaymentFailure(str(data.get("message") or "网关拒绝"), reference=reference)
        body = data.get("data") or {}
        log_event(logger, E.PAYMENT_AUTHORIZE, tenant_id=tenant_id, reference=reference, amount=amount, currency=currency)
        return Authorization(
            reference=str(body.get("reference") or reference),
            authorization_url=str(body.get("authorization_url") or ""),
            access_code=str(body.get("access_code") or ""),
        )

    def charge_recurring(self, authorization_code: str, amount, currency: str, reference: str, email: str = "") -> ChargeResult:
        payload = {
            "authorization_code": authorization_code,
            "email": email or "billing@tenants.invalid",
            "amount": _to_minor_units(amount),
            "currency": currency,
            "reference": reference,
        }
        try:
            data = self._post("/transaction/charge_authorization", payload)
        except requests.Timeout:
            # 超时视为本次失败，不在同一轮内重试
            return ChargeResult(success=False, message="gateway timeout")
        except requests.RequestException as e:
            return ChargeResult(success=False, message=f"gateway error: {e}")
        body = data.get("data") or {}
        if data.get("status") and str(body.get("status", "")).lower() == "success":
            return ChargeResult(success=True, transaction_id=str(body.get("id") or body.get("reference") or reference))
        message = body.get("gateway_response") or data.get("message") or "charge declined"
        return ChargeResult(success=False, transaction_id=str(body.get("id") or ""), message=str(message))

    def refund(self, transaction_id: str, amount=None) -> ChargeResult:
        payload = {"transaction": transaction_id}
        if amount is not None:
            payload["amount"] = _to_minor_units(amount)
        try:
            data = self._post("/refund", payload)
        except requests.RequestException as e:
            return ChargeResult(success=False, message=f"gateway error: {e}")
        if not data.get("status"):
            return ChargeResult(success=False, message=str(data.get("message") or "refund declined"))
        log_event(logger, E.PAYMENT_REFUND, transaction_id=transaction_id, amount=amount)
        return ChargeResult(success=True, transaction_id=transaction_id)


@dataclass
class MockGateway(PaymentGateway):
    """测试支付通道：按预设结果返回，并记录每次调用。"""

    channel = "mock"
    charge_succeeds: bool = True
    decline_message: str = "mock decline"
    fail_authorize: bool = False
    calls: List[tuple] = field(default_factory=list)
    declined_codes: List[str] = field(default_factory=list)

    def authorize(self, tenant_id: str, amount, currency: str, reference: str, email: str = "") -> Authorization:
        self.calls.append(("authorize", tenant_id, Decimal(str(amount)), currency, reference))
        if self.fail_authorize:
            raise PaymentFailure(self.decline_message, reference=reference)
        return Authorization(reference=reference, authorization_url=f"mockpay://{reference}")

    def charge_recurring(self, authorization_code: str, amount, currency: str, reference: str, email: str = "") -> ChargeResult:
        self.calls.append(("charge", authorization_code, Decimal(str(amount)), currency, reference))
        if not self.charge_succeeds or authorization_code in self.declined_codes:
            return ChargeResult(success=False, message=self.decline_message)
        return ChargeResult(success=True, transaction_id=f"mock-{uuid.uuid4().hex[:10]}")

    def refund(self, transaction_id: str, amount=None) -> ChargeResult:
        self.calls.append(("refund", transaction_id, amount))
        return ChargeResult(success=True, transaction_id=transaction_id)


_gateway: Optional[PaymentGateway] = None


def get_payment_gateway() -> PaymentGateway:
    global _gateway
    if _gateway is None:
        channel = str(cfg.get("billing.gateway.channel", "mock")).strip().lower()
        _gateway = PaystackGateway() if channel == "paystack" else MockGateway()
    return _gateway
