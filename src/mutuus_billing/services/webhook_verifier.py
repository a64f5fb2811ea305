"""
Webhook ingestion - signature verification and event parsing
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Union
import json
import logging

import stripe

from ..exceptions import VerificationError
from ..timeutils import from_unix

logger = logging.getLogger(__name__)

# Map Stripe events to our standard names
EVENT_TYPE_MAPPING = {
    "checkout.session.completed": "checkout_completed",
    "customer.subscription.updated": "subscription_updated",
    "customer.subscription.deleted": "subscription_deleted",
    "invoice.payment_failed": "invoice_payment_failed",
    "invoice.paid": "invoice_paid",
}

DEFAULT_TOLERANCE_SECONDS = 300


@dataclass(frozen=True)
class VerifiedEvent:
    """Authenticated provider event"""
    event_id: str
    event_type: str
    provider_event_type: str
    object_payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: Optional[datetime] = None

    @property
    def customer_id(self) -> Optional[str]:
        customer = self.object_payload.get("customer")
        if isinstance(customer, dict):
            return customer.get("id")
        return customer


def verify(
    raw_body: Union[bytes, str],
    signature_header: Optional[str],
    signing_secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> VerifiedEvent:
    """
    Authenticate and parse a Stripe webhook delivery

    Args:
        raw_body: Request body exactly as received
        signature_header: Value of the ``Stripe-Signature`` header
        signing_secret: Endpoint signing secret
        tolerance: Maximum age of the signed timestamp, in seconds

    Returns:
        VerifiedEvent

    Raises:
        VerificationError: missing/invalid signature or malformed payload
    """
    if not signing_secret:
        raise VerificationError("Webhook signing secret not configured")
    if not signature_header:
        raise VerificationError("Missing Stripe-Signature header")

    try:
        payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
    except UnicodeDecodeError:
        raise VerificationError("Webhook payload is not valid UTF-8")

    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, signing_secret, tolerance)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        raise VerificationError("Invalid webhook signature")

    return parse_event(payload)


def parse_event(payload: str) -> VerifiedEvent:
    """Deserialize an already-authenticated payload into a VerifiedEvent"""
    try:
        data = json.loads(payload)
    except ValueError:
        raise VerificationError("Webhook payload is not valid JSON")

    if not isinstance(data, dict):
        raise VerificationError("Webhook payload must be a JSON object")

    event_id = data.get("id")
    provider_type = data.get("type")
    obj = (data.get("data") or {}).get("object") if isinstance(data.get("data"), dict) else None

    if not event_id or not isinstance(event_id, str):
        raise VerificationError("Webhook event has no id")
    if not provider_type or not isinstance(provider_type, str):
        raise VerificationError(f"Webhook event {event_id} has no type")
    if not isinstance(obj, dict):
        raise VerificationError(f"Webhook event {event_id} has no data.object")

    created = data.get("created")
    try:
        occurred_at = from_unix(created) if created is not None else None
    except (TypeError, ValueError, OverflowError):
        raise VerificationError(f"Webhook event {event_id} has an invalid timestamp")

    return VerifiedEvent(
        event_id=event_id,
        event_type=EVENT_TYPE_MAPPING.get(provider_type, provider_type),
        provider_event_type=provider_type,
        object_payload=obj,
        occurred_at=occurred_at,
    )
