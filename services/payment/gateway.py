"""
services/payment/gateway.py
Thin Razorpay wrapper. Every call runs through the "razorpay" circuit breaker
and is pushed to a worker thread (the SDK is blocking). Failures surface as
PaymentGatewayError.
"""

import logging
from decimal import Decimal
from typing import Optional

from pybreaker import CircuitBreakerError
from starlette.concurrency import run_in_threadpool

from config.settings import settings
from shared.utils.errors import PaymentGatewayError
from shared.utils.helpers import to_paise
from shared.utils.resilience import circuit_breaker_manager

logger = logging.getLogger(__name__)


def get_razorpay_client():
    """Lazy import Razorpay client."""
    import razorpay

    return razorpay.Client(auth=(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET))


class RazorpayGateway:
    def __init__(self):
        self.breaker = circuit_breaker_manager.get_breaker("razorpay")

    async def _call(self, operation: str, func, *args) -> dict:
        try:
            return await run_in_threadpool(self.breaker.call, func, *args)
        except CircuitBreakerError:
            logger.error("Razorpay circuit open, skipping %s", operation)
            raise PaymentGatewayError("Payment service temporarily unavailable")
        except Exception as e:
            logger.error("Razorpay %s failed: %s", operation, e)
            raise PaymentGatewayError(f"Payment gateway error: {e}")

    async def create_order(
        self,
        amount: Decimal,
        receipt: str,
        notes: Optional[dict] = None,
    ) -> dict:
        """Create an order for `amount` rupees. Razorpay takes integer paise."""
        client = get_razorpay_client()
        payload = {
            "amount": to_paise(amount),
            "currency": settings.PAYMENT_CURRENCY,
            "receipt": receipt,
            "notes": notes or {},
        }
        return await self._call("order.create", client.order.create, payload)

    async def refund(
        self,
        razorpay_payment_id: str,
        amount: Decimal,
        notes: Optional[dict] = None,
    ) -> dict:
        client = get_razorpay_client()
        payload = {"amount": to_paise(amount), "notes": notes or {}}
        return await self._call("payment.refund", client.payment.refund, razorpay_payment_id, payload)


_gateway: Optional[RazorpayGateway] = None


def get_payment_gateway() -> RazorpayGateway:
    """FastAPI dependency returning the shared gateway wrapper."""
    global _gateway
    if _gateway is None:
        _gateway = RazorpayGateway()
    return _gateway
