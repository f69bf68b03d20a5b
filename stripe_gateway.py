from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

import stripe

from config import Settings, get_settings
from schemas import CheckoutSessionIn

logger = logging.getLogger(__name__)


class WebhookSignatureError(ValueError):
    pass


class BillingConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class SubscriptionInfo:
    id: str
    status: Optional[str]
    customer_id: Optional[str]
    metadata: dict[str, str]


def is_live_key(secret_key: str) -> bool:
    return secret_key.startswith("sk_live_")


class StripeGateway:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def _client(self) -> stripe.StripeClient:
        if not self.settings.stripe_secret_key:
            raise BillingConfigError("Missing STRIPE_SECRET_KEY")
        return stripe.StripeClient(self.settings.stripe_secret_key)

    def verify_event(self, payload: bytes, signature: Optional[str]) -> dict[str, Any]:
        secret = self.settings.stripe_webhook_secret
        if not secret:
            raise BillingConfigError("Missing STRIPE_WEBHOOK_SECRET")
        if not signature:
            raise WebhookSignatureError("Missing stripe-signature header")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), signature, secret
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            raise WebhookSignatureError(
                f"Webhook signature verification failed: {exc}"
            ) from exc
        try:
            body = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ValueError("Webhook body is not valid JSON") from exc
        if not isinstance(body, dict):
            raise ValueError("Webhook body is not an event object")
        return body

    def monthly_price_id(self) -> str:
        secret_key = self.settings.stripe_secret_key
        if not secret_key:
            raise BillingConfigError("Missing STRIPE_SECRET_KEY")
        if is_live_key(secret_key):
            price_id = self.settings.stripe_price_monthly_live
            missing = "Missing STRIPE_PRICE_MONTHLY_LIVE"
        else:
            price_id = self.settings.stripe_price_monthly_test
            missing = "Missing STRIPE_PRICE_MONTHLY_TEST"
        if not price_id:
            raise BillingConfigError(missing)
        return price_id

    def retrieve_subscription(self, subscription_id: str) -> Optional[SubscriptionInfo]:
        try:
            sub = self._client().subscriptions.retrieve(subscription_id)
        except stripe.InvalidRequestError:
            logger.warning(f"subscription_not_found: id={subscription_id}")
            return None
        except stripe.StripeError as exc:
            raise RuntimeError(
                f"Failed to retrieve subscription {subscription_id} from Stripe"
            ) from exc
        customer = sub.get("customer")
        customer_id = customer if isinstance(customer, str) else getattr(customer, "id", None)
        metadata = sub.get("metadata") or {}
        return SubscriptionInfo(
            id=sub["id"],
            status=sub.get("status"),
            customer_id=customer_id,
            metadata={str(k): str(v) for k, v in dict(metadata).items()},
        )

    def create_checkout_session(self, data: CheckoutSessionIn) -> str:
        metadata = {"userId": str(data.user_id)}
        if data.email:
            metadata["email"] = data.email
        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": data.price_id, "quantity": 1}],
            "success_url": data.success_url,
            "cancel_url": data.cancel_url,
            "metadata": metadata,
            "client_reference_id": str(data.user_id),
            "subscription_data": {"metadata": metadata},
        }
        if data.customer_id:
            params["customer"] = data.customer_id
        elif data.email:
            params["customer_email"] = data.email
        try:
            session = self._client().checkout.sessions.create(params=params)
        except stripe.StripeError as exc:
            raise RuntimeError(f"Stripe checkout failed: {exc}") from exc
        url = session.get("url")
        if not url:
            raise RuntimeError("Checkout failed: missing session url")
        logger.info(f"checkout_session_created: user_id={data.user_id}")
        return url
