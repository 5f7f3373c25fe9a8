"""Payment gateway adapters.

One adapter per provider behind a common interface: create a provider-side
payment order, verify the signed callback the client relays back, look up
the provider's view of a payment, and refund. Razorpay goes through its SDK,
Paytm checksums through ``paytmchecksum``, PhonePe over ``httpx``. Every call
gets the caller's remaining deadline as timeout; a timeout surfaces as
``DeadlineExceeded`` and any other transport or provider failure as
``GatewayUnavailable``. A callback missing its signed fields is rejected with
``ValidationFailed`` before anything is decided.
"""
import base64
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field

import httpx
import razorpay
import requests
from paytmchecksum import PaytmChecksum
from razorpay.errors import BadRequestError, GatewayError, ServerError, SignatureVerificationError

from cinepos.config import settings
from cinepos.errors import DeadlineExceeded, GatewayUnavailable, ValidationFailed
from cinepos.models.core import GatewayProvider, Order, PayMethod
from cinepos.services.gateway_config import ResolvedConfig

log = logging.getLogger(__name__)

PAID, FAILED, PENDING = "paid", "failed", "pending"


def http_client(timeout: float) -> httpx.Client:
    return httpx.Client(timeout=timeout)


def razorpay_client(key_id: str, key_secret: str) -> razorpay.Client:
    return razorpay.Client(auth=(key_id, key_secret))


@dataclass
class PaymentOrder:
    provider_order_id: str
    amount: int
    currency: str
    params: dict = field(default_factory=dict)   # handed to the client-side checkout


@dataclass
class VerifyResult:
    ok: bool
    provider_order_id: str | None = None
    provider_txn_id: str | None = None
    reason: str | None = None


@dataclass
class StatusResult:
    state: str                                   # paid | failed | pending
    provider_txn_id: str | None = None
    reason: str | None = None


@dataclass
class RefundResult:
    ok: bool
    refund_ref: str | None = None
    unsupported: bool = False
    reason: str | None = None


class PaymentGateway:
    provider = GatewayProvider.NONE

    def __init__(self, cfg: ResolvedConfig):
        self.cfg = cfg

    def _skip_if_late(self, timeout: float):
        if timeout <= 0:
            raise DeadlineExceeded(f"{self.provider.value} call skipped, deadline already passed")

    def _call(self, method: str, url: str, timeout: float, **kw) -> dict:
        self._skip_if_late(timeout)
        try:
            with http_client(timeout) as client:
                r = client.request(method, url, **kw)
                r.raise_for_status()
                return r.json()
        except httpx.TimeoutException as e:
            log.warning("%s timed out: %s %s", self.provider.value, method, url)
            raise DeadlineExceeded(f"{self.provider.value} did not answer in time") from e
        except (httpx.HTTPError, ValueError) as e:
            log.warning("%s call failed: %s %s: %s", self.provider.value, method, url, e)
            raise GatewayUnavailable(f"{self.provider.value} unavailable") from e

    def create_payment_order(self, order: Order, method: PayMethod, timeout: float) -> PaymentOrder:
        raise GatewayUnavailable("no payment gateway configured")

    def verify_callback(self, payload: dict, expected_order_id: str | None = None) -> VerifyResult:
        return VerifyResult(ok=False, reason="no payment gateway configured")

    def fetch_status(self, provider_order_id: str, timeout: float) -> StatusResult:
        raise GatewayUnavailable("no payment gateway configured")

    def refund(self, provider_txn_id: str, amount: int, timeout: float) -> RefundResult:
        return RefundResult(ok=False, unsupported=True, reason="no payment gateway configured")


class NullGateway(PaymentGateway):
    """Cash-only channel."""


class RazorpayGateway(PaymentGateway):
    provider = GatewayProvider.RAZORPAY

    @property
    def client(self) -> razorpay.Client:
        return razorpay_client(self.cfg.key_id or "", self.cfg.key_secret or "")

    def _sdk(self, what: str, timeout: float, fn, *args, **kw) -> dict:
        self._skip_if_late(timeout)
        try:
            return fn(*args, timeout=timeout, **kw)
        except requests.Timeout as e:
            log.warning("razorpay timed out: %s", what)
            raise DeadlineExceeded("razorpay did not answer in time") from e
        except (BadRequestError, GatewayError, ServerError, requests.RequestException, ValueError) as e:
            log.warning("razorpay call failed: %s: %s", what, e)
            raise GatewayUnavailable("razorpay unavailable") from e

    def create_payment_order(self, order, method, timeout):
        body = {
            "amount": order.total,
            "currency": settings.CURRENCY,
            "receipt": order.order_number,
            "notes": {"orderId": order.id, "theaterId": order.theater_id, "method": method.value},
        }
        data = self._sdk("order.create", timeout, self.client.order.create, data=body)
        rp_order_id = data.get("id")
        if not rp_order_id:
            raise GatewayUnavailable("razorpay returned no order id")
        return PaymentOrder(
            provider_order_id=rp_order_id,
            amount=int(data.get("amount", order.total)),
            currency=data.get("currency", settings.CURRENCY),
            params={
                "key": self.cfg.key_id,
                "orderId": rp_order_id,
                "amount": int(data.get("amount", order.total)),
                "currency": data.get("currency", settings.CURRENCY),
                "name": order.customer_name,
                "description": order.order_number,
                "method": method.value,
            },
        )

    def verify_callback(self, payload, expected_order_id=None):
        rp_order_id = payload.get("providerOrderId") or payload.get("razorpay_order_id")
        payment_id = payload.get("providerTxnId") or payload.get("razorpay_payment_id")
        signature = payload.get("signature") or payload.get("razorpay_signature")
        if not (rp_order_id and payment_id and signature):
            raise ValidationFailed("missing razorpay callback fields")
        if expected_order_id and rp_order_id != expected_order_id:
            return VerifyResult(ok=False, provider_order_id=rp_order_id, provider_txn_id=payment_id,
                                reason="provider order id mismatch")
        try:
            valid = self.client.utility.verify_payment_signature({
                "razorpay_order_id": rp_order_id,
                "razorpay_payment_id": payment_id,
                "razorpay_signature": str(signature),
            })
        except SignatureVerificationError:
            valid = False
        if not valid:
            return VerifyResult(ok=False, provider_order_id=rp_order_id, provider_txn_id=payment_id,
                                reason="signature mismatch")
        return VerifyResult(ok=True, provider_order_id=rp_order_id, provider_txn_id=payment_id)

    def verify_webhook(self, body: str, signature: str, secret: str) -> bool:
        try:
            return self.client.utility.verify_webhook_signature(body, signature, secret) is not False
        except SignatureVerificationError:
            return False

    def fetch_status(self, provider_order_id, timeout):
        data = self._sdk("order.payments", timeout, self.client.order.payments, provider_order_id)
        payments = data.get("items") or []
        captured = [p for p in payments if p.get("status") == "captured"]
        if captured:
            return StatusResult(PAID, provider_txn_id=captured[0].get("id"))
        if payments and all(p.get("status") == "failed" for p in payments):
            last = payments[0]
            return StatusResult(FAILED, provider_txn_id=last.get("id"),
                                reason=last.get("error_description") or "payment failed")
        return StatusResult(PENDING)

    def refund(self, provider_txn_id, amount, timeout):
        data = self._sdk("payment.refund", timeout, self.client.payment.refund, provider_txn_id, {"amount": amount})
        return RefundResult(ok=True, refund_ref=data.get("id"))


class PhonePeGateway(PaymentGateway):
    """PhonePe PG: base64 request body, ``X-VERIFY`` = sha256(body + path + salt) ### index."""

    provider = GatewayProvider.PHONEPE
    PAY_PATH = "/pg/v1/pay"
    STATUS_PATH = "/pg/v1/status/{mid}/{txn}"

    def _x_verify(self, *parts: str) -> str:
        digest = hashlib.sha256(("".join(parts) + (self.cfg.key_secret or "")).encode()).hexdigest()
        return f"{digest}###{self.cfg.salt_index or '1'}"

    def create_payment_order(self, order, method, timeout):
        merchant_txn_id = f"{order.order_number}-{order.id[:8]}"
        request = {
            "merchantId": self.cfg.key_id,
            "merchantTransactionId": merchant_txn_id,
            "merchantUserId": order.created_by_user_id or order.theater_id,
            "amount": order.total,
            "paymentInstrument": {"type": "PAY_PAGE"},
        }
        encoded = base64.b64encode(json.dumps(request).encode()).decode()
        data = self._call(
            "POST", f"{settings.PHONEPE_API_BASE}{self.PAY_PATH}", timeout,
            json={"request": encoded},
            headers={"X-VERIFY": self._x_verify(encoded, self.PAY_PATH)},
        )
        if not data.get("success"):
            raise GatewayUnavailable(f"phonepe refused: {data.get('code')}")
        redirect = (((data.get("data") or {}).get("instrumentResponse") or {}).get("redirectInfo") or {}).get("url")
        return PaymentOrder(
            provider_order_id=merchant_txn_id,
            amount=order.total,
            currency=settings.CURRENCY,
            params={"merchantTransactionId": merchant_txn_id, "redirectUrl": redirect, "method": method.value},
        )

    def verify_callback(self, payload, expected_order_id=None):
        response = payload.get("response")
        x_verify = payload.get("signature") or payload.get("xVerify")
        if not (response and x_verify):
            raise ValidationFailed("missing phonepe callback fields")
        if not hmac.compare_digest(self._x_verify(response), str(x_verify)):
            return VerifyResult(ok=False, reason="checksum mismatch")
        try:
            body = json.loads(base64.b64decode(response))
        except ValueError:
            raise ValidationFailed("undecodable phonepe response")
        data = body.get("data") or {}
        merchant_txn_id = data.get("merchantTransactionId")
        txn_id = data.get("transactionId")
        if expected_order_id and merchant_txn_id != expected_order_id:
            return VerifyResult(ok=False, provider_order_id=merchant_txn_id, provider_txn_id=txn_id,
                                reason="provider order id mismatch")
        if body.get("code") != "PAYMENT_SUCCESS":
            return VerifyResult(ok=False, provider_order_id=merchant_txn_id, provider_txn_id=txn_id,
                                reason=body.get("code") or "payment not successful")
        return VerifyResult(ok=True, provider_order_id=merchant_txn_id, provider_txn_id=txn_id)

    def fetch_status(self, provider_order_id, timeout):
        path = self.STATUS_PATH.format(mid=self.cfg.key_id or "", txn=provider_order_id)
        data = self._call(
            "GET", f"{settings.PHONEPE_API_BASE}{path}", timeout,
            headers={"X-VERIFY": self._x_verify(path), "X-MERCHANT-ID": self.cfg.key_id or ""},
        )
        txn_id = (data.get("data") or {}).get("transactionId")
        code = data.get("code")
        if code == "PAYMENT_SUCCESS":
            return StatusResult(PAID, provider_txn_id=txn_id)
        if code in ("PAYMENT_ERROR", "PAYMENT_DECLINED", "TIMED_OUT"):
            return StatusResult(FAILED, provider_txn_id=txn_id, reason=code)
        return StatusResult(PENDING, provider_txn_id=txn_id)

    def refund(self, provider_txn_id, amount, timeout):
        return RefundResult(ok=False, unsupported=True, reason="phonepe refunds are handled on the merchant dashboard")


class PaytmGateway(PaymentGateway):
    """Paytm PG; request and callback checksums come from ``paytmchecksum``."""

    provider = GatewayProvider.PAYTM

    def _signed(self, path: str, body: dict, timeout: float, **kw) -> dict:
        signature = PaytmChecksum.generateSignature(json.dumps(body), self.cfg.key_secret or "")
        return self._call("POST", f"{settings.PAYTM_API_BASE}{path}", timeout,
                          content=json.dumps({"body": body, "head": {"signature": signature}}),
                          headers={"Content-Type": "application/json"}, **kw)

    def create_payment_order(self, order, method, timeout):
        mid = self.cfg.key_id or ""
        body = {
            "requestType": "Payment",
            "mid": mid,
            "orderId": order.id,
            "txnAmount": {"value": f"{order.total / 100:.2f}", "currency": settings.CURRENCY},
            "userInfo": {"custId": order.created_by_user_id or order.theater_id},
        }
        data = self._signed("/theia/api/v1/initiateTransaction", body, timeout,
                            params={"mid": mid, "orderId": order.id})
        token = ((data.get("body") or {}).get("txnToken"))
        if not token:
            raise GatewayUnavailable("paytm returned no transaction token")
        return PaymentOrder(
            provider_order_id=order.id,
            amount=order.total,
            currency=settings.CURRENCY,
            params={"mid": mid, "orderId": order.id, "txnToken": token,
                    "amount": body["txnAmount"]["value"], "method": method.value},
        )

    def verify_callback(self, payload, expected_order_id=None):
        fields = payload.get("fields") or payload
        checksum = fields.get("CHECKSUMHASH") or payload.get("signature")
        if not checksum or not fields.get("ORDERID"):
            raise ValidationFailed("missing paytm callback fields")
        # verifySignature drops CHECKSUMHASH from the dict it is given
        params = {k: str(v) for k, v in fields.items() if k.isupper() and v is not None}
        try:
            valid = PaytmChecksum.verifySignature(params, self.cfg.key_secret or "", str(checksum))
        except ValueError:
            valid = False
        order_id, txn_id = fields.get("ORDERID"), fields.get("TXNID")
        if not valid:
            return VerifyResult(ok=False, provider_order_id=order_id, provider_txn_id=txn_id, reason="checksum mismatch")
        if expected_order_id and order_id != expected_order_id:
            return VerifyResult(ok=False, provider_order_id=order_id, provider_txn_id=txn_id,
                                reason="provider order id mismatch")
        if fields.get("STATUS") != "TXN_SUCCESS":
            return VerifyResult(ok=False, provider_order_id=order_id, provider_txn_id=txn_id,
                                reason=fields.get("RESPMSG") or fields.get("STATUS") or "payment not successful")
        return VerifyResult(ok=True, provider_order_id=order_id, provider_txn_id=txn_id)

    def fetch_status(self, provider_order_id, timeout):
        data = self._signed("/v3/order/status", {"mid": self.cfg.key_id or "", "orderId": provider_order_id}, timeout)
        body = data.get("body") or {}
        result = body.get("resultInfo") or {}
        status = result.get("resultStatus")
        if status == "TXN_SUCCESS":
            return StatusResult(PAID, provider_txn_id=body.get("txnId"))
        if status == "TXN_FAILURE":
            return StatusResult(FAILED, provider_txn_id=body.get("txnId"), reason=result.get("resultMsg"))
        return StatusResult(PENDING, provider_txn_id=body.get("txnId"))

    def refund(self, provider_txn_id, amount, timeout):
        return RefundResult(ok=False, unsupported=True, reason="paytm refunds are handled on the merchant dashboard")


_ADAPTERS = {
    GatewayProvider.RAZORPAY: RazorpayGateway,
    GatewayProvider.PHONEPE: PhonePeGateway,
    GatewayProvider.PAYTM: PaytmGateway,
}


def gateway_for(cfg: ResolvedConfig) -> PaymentGateway:
    if not cfg.gateway_active:
        return NullGateway(cfg)
    cls = _ADAPTERS.get(cfg.provider)
    if cls is None:
        raise ValidationFailed(f"unsupported provider {cfg.provider.value}")
    return cls(cfg)
