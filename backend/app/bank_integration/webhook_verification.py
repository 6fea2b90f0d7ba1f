"""
Webhook Verification

Plaid signs every webhook with an ES256 JWT sent in the Plaid-Verification
header. The JWT payload carries the SHA-256 of the raw request body and its
issue time; the signing key is fetched from Plaid by the header's key id.

Documentation: https://plaid.com/docs/api/webhooks/webhook-verification/
"""

import hashlib
import hmac
import logging
import time
from typing import Dict, Any, Callable, Optional
from jose import JWTError, jwt

from .providers.base import BaseBankProvider, ProviderError

logger = logging.getLogger(__name__)

WEBHOOK_SIGNING_ALGORITHM = 'ES256'
MAX_WEBHOOK_AGE_SECONDS = 5 * 60


class WebhookVerificationError(ValueError):
    """The webhook could not be proven to come from Plaid."""
    pass


class WebhookVerifier:
    """
    Checks the signature, age and body hash of an incoming webhook.

    Example:
        >>> verifier = WebhookVerifier(provider)
        >>> claims = await verifier.verify(raw_body, request.headers.get('Plaid-Verification'))
    """

    def __init__(
        self,
        provider: BaseBankProvider,
        max_age_seconds: int = MAX_WEBHOOK_AGE_SECONDS,
        clock: Callable[[], float] = time.time
    ):
        self.provider = provider
        self.max_age_seconds = max_age_seconds
        self.clock = clock

    async def verify(self, body: bytes, signed_jwt: Optional[str]) -> Dict[str, Any]:
        """
        Verify a webhook.

        Args:
            body: Raw request body, exactly as received
            signed_jwt: Value of the Plaid-Verification header

        Returns:
            The verified JWT claims

        Raises:
            WebhookVerificationError: Any check failed
        """
        if not signed_jwt:
            raise WebhookVerificationError("Missing Plaid-Verification header")

        try:
            header = jwt.get_unverified_header(signed_jwt)
        except JWTError as e:
            raise WebhookVerificationError("Malformed Plaid-Verification token") from e

        # Plaid signs with ES256 only
        if header.get('alg') != WEBHOOK_SIGNING_ALGORITHM:
            raise WebhookVerificationError(f"Unexpected signing algorithm {header.get('alg')!r}")

        key_id = header.get('kid')
        if not key_id:
            raise WebhookVerificationError("Verification token has no key id")

        key = await self._signing_key(key_id)

        try:
            claims = jwt.decode(signed_jwt, key, algorithms=[WEBHOOK_SIGNING_ALGORITHM])
        except JWTError as e:
            raise WebhookVerificationError(f"Invalid webhook signature: {e}") from e

        issued_at = claims.get('iat')
        if not isinstance(issued_at, (int, float)):
            raise WebhookVerificationError("Verification token has no issue time")
        if self.clock() - issued_at > self.max_age_seconds:
            raise WebhookVerificationError("Verification token is too old")

        expected_digest = claims.get('request_body_sha256')
        if not isinstance(expected_digest, str):
            raise WebhookVerificationError("Verification token has no body hash")
        if not hmac.compare_digest(expected_digest, hashlib.sha256(body).hexdigest()):
            raise WebhookVerificationError("Webhook body does not match its signature")

        return claims

    async def _signing_key(self, key_id: str) -> Dict[str, Any]:
        try:
            key = await self.provider.get_webhook_verification_key(key_id)
        except ProviderError as e:
            logger.error(f"Could not fetch webhook verification key {key_id}: {e}")
            raise WebhookVerificationError(f"Unknown verification key {key_id}") from e

        if key.get('expired_at'):
            raise WebhookVerificationError(f"Verification key {key_id} has expired")
        return key
