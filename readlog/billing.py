import logging
import os
from typing import Optional

import stripe
from dotenv import load_dotenv

from readlog.errors import ExternalBillingError
from readlog.metrics import billing_errors_total
from readlog.models import Tier

load_dotenv()
STRIPE_API_KEY = os.getenv("STRIPE_API_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
stripe.api_key = STRIPE_API_KEY

logger = logging.getLogger("readlog.billing")

# Stripe Price IDs come from the environment so test and live keys can differ.
PRICES = {
    os.getenv("STRIPE_PRICE_BASIC_MONTHLY", "price_basic_monthly"): (Tier.basic, False),
    os.getenv("STRIPE_PRICE_BASIC_YEARLY", "price_basic_yearly"): (Tier.basic, True),
    os.getenv("STRIPE_PRICE_PREMIUM_MONTHLY", "price_premium_monthly"): (Tier.premium, False),
    os.getenv("STRIPE_PRICE_PREMIUM_YEARLY", "price_premium_yearly"): (Tier.premium, True),
}
PRICE_TO_TIER = {price_id: tier for price_id, (tier, _) in PRICES.items()}

TIER_ORDER = [Tier.free, Tier.basic, Tier.premium]

def tier_rank(tier: Tier) -> int:
    """Return the rank of a tier for comparison (higher is better)."""
    return TIER_ORDER.index(tier)

def tier_for_price(price_id: Optional[str]) -> Optional[Tier]:
    return PRICE_TO_TIER.get(price_id)

def is_yearly_price(price_id: Optional[str]) -> bool:
    return PRICES.get(price_id, (None, False))[1]

def _billing_failure(operation: str, exc: Exception) -> ExternalBillingError:
    billing_errors_total.labels(operation).inc()
    logger.error(f"Stripe {operation} failed: {exc}")
    return ExternalBillingError(f"Stripe {operation} failed.", operation=operation)

def verify_webhook(payload: bytes, sig_header: str) -> None:
    """Raise if the payload was not signed with our webhook secret."""
    if not sig_header:
        raise stripe.SignatureVerificationError("Missing Stripe-Signature header", sig_header)
    stripe.WebhookSignature.verify_header(payload.decode("utf-8"), sig_header, STRIPE_WEBHOOK_SECRET)

def set_cancel_at_period_end(stripe_subscription_id: str, cancel: bool = True):
    try:
        return stripe.Subscription.modify(stripe_subscription_id, cancel_at_period_end=cancel)
    except stripe.StripeError as e:
        raise _billing_failure("cancel_at_period_end", e) from e

def cancel_immediately(stripe_subscription_id: str):
    try:
        return stripe.Subscription.cancel(stripe_subscription_id)
    except stripe.StripeError as e:
        raise _billing_failure("cancel", e) from e

def change_price(stripe_subscription_id: str, price_id: str):
    """Swap the subscription's single item to ``price_id`` with proration."""
    try:
        current = stripe.Subscription.retrieve(stripe_subscription_id)
        items = current["items"]["data"]
        if not items:
            raise ExternalBillingError("Subscription item not found.", operation="change_price")
        return stripe.Subscription.modify(
            stripe_subscription_id,
            items=[{"id": items[0]["id"], "price": price_id}],
            proration_behavior="create_prorations",
        )
    except stripe.StripeError as e:
        raise _billing_failure("change_price", e) from e

def create_checkout_session(*, price_id: str, user_id: int, email: str, success_url: str, cancel_url: str):
    try:
        return stripe.checkout.Session.create(
            mode="subscription",
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            client_reference_id=str(user_id),
            customer_email=email,
            metadata={"user_id": str(user_id), "price_id": price_id},
            subscription_data={"metadata": {"user_id": str(user_id)}},
        )
    except stripe.StripeError as e:
        raise _billing_failure("create_checkout_session", e) from e

def list_checkout_price_ids(checkout_session_id: str) -> list:
    try:
        line_items = stripe.checkout.Session.list_line_items(checkout_session_id)
    except stripe.StripeError as e:
        raise _billing_failure("list_line_items", e) from e
    return [item["price"]["id"] for item in line_items["data"]]
