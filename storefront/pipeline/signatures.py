"""
Signature Verifier
==================
HMAC-SHA256 checks for the two gateway signing contracts:

- Synchronous payment confirmation: hex HMAC of ``order_id + "|" + payment_id``
  keyed with the API key secret.
- Webhook delivery: hex HMAC of the raw request body keyed with the webhook
  secret.

The two are never interchangeable. Nothing downstream runs on a failed check.
"""

import hashlib
import hmac
from typing import Optional, Union

import structlog

from storefront.config import GatewayConfig
from storefront.errors import SignatureVerificationError

logger = structlog.get_logger().bind(component="signature_verifier")


class SignatureVerifier:

    def __init__(self, config: Optional[GatewayConfig] = None):
        config = config or GatewayConfig()
        self._key_secret = config.KEY_SECRET
        self._webhook_secret = config.WEBHOOK_SECRET

    @staticmethod
    def sign(payload: Union[str, bytes], secret: str) -> str:
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    @classmethod
    def verify(cls, payload: Union[str, bytes], provided_signature: Optional[str], secret: str) -> bool:
        """Constant-time comparison of the expected and provided hex digests"""
        if not provided_signature or not secret:
            return False
        expected = cls.sign(payload, secret)
        return hmac.compare_digest(expected.encode("utf-8"), provided_signature.encode("utf-8"))

    @staticmethod
    def payment_material(gateway_order_id: str, payment_id: str) -> str:
        return f"{gateway_order_id}|{payment_id}"

    def verify_payment(self, gateway_order_id: str, payment_id: str, signature: Optional[str]) -> None:
        material = self.payment_material(gateway_order_id, payment_id)
        if not self.verify(material, signature, self._key_secret):
            logger.warning("payment_signature_invalid", gateway_order_id=gateway_order_id)
            raise SignatureVerificationError()

    def verify_webhook(self, body: bytes, signature: Optional[str]) -> None:
        if not self.verify(body, signature, self._webhook_secret):
            logger.warning("webhook_signature_invalid", body_size=len(body))
            raise SignatureVerificationError("Invalid webhook signature")
