"""
Payment gateway integrations.

Chapa hosted checkout in test/production mode, plus an in-process mock for
local runs and tests.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

import requests

from langcenter.config import settings
from langcenter.errors import GatewayError

log = logging.getLogger("gateway")


class Environment(str, Enum):
    TEST = "test"
    PRODUCTION = "production"
    MOCK = "mock"


@dataclass(frozen=True)
class PayerInfo:
    email: str
    first_name: str
    last_name: str = ""
    phone: Optional[str] = None


@dataclass(frozen=True)
class GatewayCheckout:
    checkout_url: str
    tx_ref: str


@dataclass(frozen=True)
class GatewayVerification:
    status: str  # success | failed | pending
    reference: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


@dataclass(frozen=True)
class GatewayRefund:
    status: str  # success | failed
    refund_ref: Optional[str] = None
    message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


def new_tx_ref(prefix: str = "lc") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:20]}"


class PaymentGateway:
    """Base class: hosted checkout, authoritative status lookup, refunds."""

    name = "base"

    def __init__(self, environment: Environment = Environment.MOCK):
        self.environment = environment

    def initialize(
        self,
        amount: Decimal,
        currency: str,
        payer: PayerInfo,
        return_url: Optional[str] = None,
        description: Optional[str] = None,
    ) -> GatewayCheckout:
        raise NotImplementedError

    def verify(self, tx_ref: str) -> GatewayVerification:
        raise NotImplementedError

    def refund(self, tx_ref: str, amount: Decimal, reason: Optional[str] = None) -> GatewayRefund:
        raise NotImplementedError


class ChapaGateway(PaymentGateway):
    name = "chapa"

    def __init__(
        self,
        environment: Environment = Environment.TEST,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        super().__init__(environment)
        self.secret_key = secret_key if secret_key is not None else settings.chapa_secret_key
        self.base_url = (base_url or settings.chapa_base_url).rstrip("/")
        self.timeout = timeout or settings.gateway_timeout_seconds

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            resp = requests.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            log.error("chapa.%s %s unreachable: %s", method.lower(), path, e)
            raise GatewayError("Payment gateway unreachable", details={"path": path}) from e
        if resp.status_code >= 500:
            log.error("chapa.%s %s -> %s", method.lower(), path, resp.status_code)
            raise GatewayError(
                "Payment gateway error", details={"path": path, "status_code": resp.status_code}
            )
        return resp

    @staticmethod
    def _json(resp: requests.Response) -> Dict:
        try:
            data = resp.json()
        except ValueError:
            raise GatewayError(
                "Payment gateway returned a non-JSON body",
                details={"status_code": resp.status_code, "body": resp.text[:200]},
            ) from None
        return data if isinstance(data, dict) else {}

    def initialize(self, amount, currency, payer, return_url=None, description=None) -> GatewayCheckout:
        tx_ref = new_tx_ref()
        payload = {
            "amount": str(amount),
            "currency": currency,
            "email": payer.email,
            "first_name": payer.first_name,
            "last_name": payer.last_name,
            "tx_ref": tx_ref,
            "return_url": return_url or settings.chapa_return_url,
            "customization": {
                "title": "Language lesson",
                "description": description or "Language Teaching Center booking",
            },
        }
        if payer.phone:
            payload["phone_number"] = payer.phone
        if settings.chapa_callback_url:
            payload["callback_url"] = settings.chapa_callback_url

        resp = self._request("POST", "/transaction/initialize", json=payload)
        data = self._json(resp)
        checkout_url = (data.get("data") or {}).get("checkout_url")
        if resp.status_code >= 400 or data.get("status") != "success" or not checkout_url:
            raise GatewayError(
                data.get("message") or "Payment initialization failed",
                details={"status_code": resp.status_code},
            )
        log.info("chapa.initialize tx_ref=%s amount=%s %s", tx_ref, amount, currency)
        return GatewayCheckout(checkout_url=checkout_url, tx_ref=tx_ref)

    def verify(self, tx_ref: str) -> GatewayVerification:
        resp = self._request("GET", f"/transaction/verify/{tx_ref}")
        data = self._json(resp)
        if resp.status_code >= 400 or data.get("status") != "success":
            log.info("chapa.verify tx_ref=%s -> failed (%s)", tx_ref, data.get("message"))
            return GatewayVerification(status="failed")
        body = data.get("data") or {}
        status = str(body.get("status", "pending")).lower()
        log.info("chapa.verify tx_ref=%s -> %s", tx_ref, status)
        return GatewayVerification(status=status, reference=body.get("reference"))

    def refund(self, tx_ref: str, amount: Decimal, reason: Optional[str] = None) -> GatewayRefund:
        payload = {"amount": str(amount)}
        if reason:
            payload["reason"] = reason
        resp = self._request("POST", f"/refund/{tx_ref}", json=payload)
        data = self._json(resp)
        if resp.status_code >= 400 or data.get("status") != "success":
            log.warning("chapa.refund tx_ref=%s declined: %s", tx_ref, data.get("message"))
            return GatewayRefund(status="failed", message=data.get("message"))
        body = data.get("data") or {}
        refund_ref = body.get("ref_id") or body.get("reference") or f"rf-{uuid.uuid4().hex[:12]}"
        log.info("chapa.refund tx_ref=%s amount=%s ref=%s", tx_ref, amount, refund_ref)
        return GatewayRefund(status="success", refund_ref=refund_ref)


class MockGateway(PaymentGateway):
    """Deterministic stand-in: every checkout succeeds unless told otherwise."""

    name = "mock"

    def __init__(self, environment: Environment = Environment.MOCK):
        super().__init__(environment)
        self.failed_refs: set[str] = set()
        self.declined_refunds: set[str] = set()

    def initialize(self, amount, currency, payer, return_url=None, description=None) -> GatewayCheckout:
        tx_ref = new_tx_ref("mock")
        return GatewayCheckout(
            checkout_url=f"https://checkout.chapa.co/checkout/payment/{tx_ref}",
            tx_ref=tx_ref,
        )

    def verify(self, tx_ref: str) -> GatewayVerification:
        if tx_ref in self.failed_refs:
            return GatewayVerification(status="failed")
        return GatewayVerification(status="success", reference=f"ref-{tx_ref}")

    def refund(self, tx_ref: str, amount: Decimal, reason: Optional[str] = None) -> GatewayRefund:
        if tx_ref in self.declined_refunds:
            return GatewayRefund(status="failed", message="Refund declined")
        return GatewayRefund(status="success", refund_ref=f"rf-{tx_ref}")


def get_gateway(environment: Optional[Environment] = None) -> PaymentGateway:
    if environment is None:
        environment = Environment(settings.payment_env.lower())
    if environment == Environment.MOCK:
        return MockGateway(environment)
    return ChapaGateway(environment)
