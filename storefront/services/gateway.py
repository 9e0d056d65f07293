"""
Payment Gateway Client
======================
Razorpay SDK wrapper. Only two calls matter to the checkout core: minting a
gateway order and fetching a payment. The SDK is blocking, so every call runs
in a worker thread.

pip install razorpay structlog
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Optional

import razorpay
import requests
import structlog
from razorpay.errors import BadRequestError
from razorpay.errors import GatewayError as RazorpayGatewayError
from razorpay.errors import ServerError

from storefront.config import GatewayConfig
from storefront.errors import GatewayError, NotFoundError
from storefront.schemas.domain import GatewayOrder, GatewayPayment

logger = structlog.get_logger().bind(component="gateway")


class IPaymentGateway(ABC):
    """Payment gateway collaborator"""

    @abstractmethod
    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Dict[str, str],
    ) -> GatewayOrder:
        pass

    @abstractmethod
    async def fetch_payment(self, payment_id: str) -> GatewayPayment:
        pass


class RazorpayGateway(IPaymentGateway):
    """Razorpay orders/payments API via the official client"""

    def __init__(self, config: Optional[GatewayConfig] = None, razorpay_client=None):
        self.config = config or GatewayConfig()
        self._client = razorpay_client or razorpay.Client(auth=(self.config.KEY_ID, self.config.KEY_SECRET))

    async def _call(self, operation: str, fn, *args, **kwargs) -> dict:
        try:
            return await asyncio.to_thread(fn, *args, timeout=self.config.TIMEOUT_SECONDS, **kwargs)
        except requests.Timeout:
            logger.error("gateway_timeout", operation=operation)
            raise GatewayError()
        except requests.RequestException as e:
            logger.error("gateway_transport_error", operation=operation, error=str(e))
            raise GatewayError()
        except (ServerError, RazorpayGatewayError) as e:
            logger.error("gateway_error_response", operation=operation, error=str(e))
            raise GatewayError()

    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Dict[str, str],
    ) -> GatewayOrder:
        try:
            data = await self._call(
                "create_order",
                self._client.order.create,
                {"amount": amount, "currency": currency, "receipt": receipt, "notes": notes},
            )
        except BadRequestError as e:
            # Razorpay error messages can echo request data; keep them out of the response
            logger.error("gateway_order_rejected", amount=amount, error=str(e))
            raise GatewayError()

        logger.info("gateway_order_created", gateway_order_id=data.get("id"), amount=amount)
        return GatewayOrder(
            id=data["id"],
            amount=data.get("amount", amount),
            currency=data.get("currency", currency),
            receipt=data.get("receipt"),
            status=data.get("status", "created"),
            notes=data.get("notes") or {},
        )

    async def fetch_payment(self, payment_id: str) -> GatewayPayment:
        try:
            data = await self._call("fetch_payment", self._client.payment.fetch, payment_id)
        except BadRequestError:
            # Unknown ids come back as BAD_REQUEST_ERROR
            raise NotFoundError("Payment not found")

        return GatewayPayment(
            id=data["id"],
            order_id=data.get("order_id"),
            status=data.get("status", "unknown"),
            amount=data.get("amount", 0),
            currency=data.get("currency", self.config.CURRENCY),
            method=data.get("method"),
            # Razorpay returns [] instead of {} for empty notes
            notes=data.get("notes") or {},
        )
