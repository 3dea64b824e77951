"""Subscription lifecycle: tier changes, cancellation, period end, deletion,
the monthly credit reset and reconciliation of Stripe billing events.

Local state is authoritative for what the user can do right now. Calls to
Stripe that fail are logged and recorded for reconciliation; they never roll
back a local change that is otherwise valid.
"""
import json
import logging
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from readlog import billing
from readlog.errors import ExternalBillingError, InconsistentState, SubscriptionRequired, Unauthorized, UserNotFound
from readlog.identity import Identity, parse_user_id, resolve_user
from readlog.metrics import credit_resets_total, increment_webhook_event
from readlog.models import Subscription, Tier, User, WebhookEvent
from readlog.repository import (
    create_user, get_subscription_by_stripe_id, get_user_by_email, get_user_by_id,
    record_reconciliation_issue, record_subscription_audit,
)
from readlog.services.credits import apply_reset, reset_allowance
from readlog.utils import add_months, utcnow

logger = logging.getLogger("readlog.subscriptions")

PAID_TIERS = (Tier.basic, Tier.premium)


def _subscription_of(user: User) -> Subscription:
    if user.subscription is None:
        raise UserNotFound(f"User {user.id} has no subscription record.")
    return user.subscription


def _change_tier(db: Session, subscription: Subscription, new_tier: Tier, *, reason: str,
                 stripe_event_id: Optional[str] = None, now: Optional[datetime] = None) -> None:
    old_tier = subscription.tier
    subscription.tier = new_tier
    apply_reset(subscription, now)
    record_subscription_audit(
        db,
        user=subscription.user,
        stripe_event_id=stripe_event_id,
        old_tier=old_tier,
        new_tier=new_tier,
        reason=reason,
    )
    logger.info(
        f"Tier changed {old_tier.value} -> {new_tier.value} ({reason})",
        extra={"user_id": subscription.user_id, "tier": new_tier.value},
    )


def signup(db: Session, email: str, name: Optional[str] = None, auth_provider: str = "local",
           auth_provider_id: Optional[str] = None) -> User:
    """Create a user on the free tier with a full free allowance.

    Signing up twice with the same email returns the existing user.
    """
    existing = get_user_by_email(db, email)
    if existing:
        return existing
    user = create_user(
        db,
        email,
        Tier.free,
        reset_allowance(Tier.free),
        name=name,
        auth_provider=auth_provider,
        auth_provider_id=auth_provider_id,
    )
    record_subscription_audit(db, user=user, stripe_event_id=None, old_tier=None, new_tier=Tier.free, reason="signup")
    db.commit()
    logger.info("User signed up on free tier", extra={"user_id": user.id, "tier": Tier.free.value})
    return user


def select_tier(db: Session, user: User, tier: Union[Tier, str], is_yearly: Optional[bool] = None, *,
                reason: str = "select_tier", stripe_event_id: Optional[str] = None,
                now: Optional[datetime] = None) -> Subscription:
    """Assign ``tier`` directly. Credits are reset to the new allowance on a
    tier change; re-selecting the current tier only starts a new period."""
    tier = Tier(tier)
    now = now or utcnow()
    subscription = _subscription_of(user)
    if tier != subscription.tier:
        _change_tier(db, subscription, tier, reason=reason, stripe_event_id=stripe_event_id, now=now)
    else:
        subscription.last_renewal_date = now
        subscription.next_renewal_date = add_months(now, 1)
    if is_yearly is not None:
        subscription.is_yearly = bool(is_yearly)
    subscription.cancel_at_period_end = False
    subscription.end_date = None
    db.commit()
    return subscription


def checkout_completed(db: Session, user: User, tier: Union[Tier, str], is_yearly: bool,
                       stripe_subscription_id: Optional[str], *, stripe_price_id: Optional[str] = None,
                       stripe_customer_id: Optional[str] = None,
                       stripe_event_id: Optional[str] = None) -> Subscription:
    tier = Tier(tier)
    subscription = _subscription_of(user)
    if (stripe_subscription_id and subscription.stripe_subscription_id == stripe_subscription_id
            and subscription.tier == tier):
        logger.info("Checkout already applied, skipping", extra={"user_id": user.id, "event_id": stripe_event_id})
        return subscription
    subscription.stripe_subscription_id = stripe_subscription_id
    subscription.stripe_price_id = stripe_price_id
    if stripe_customer_id and user.stripe_customer_id != stripe_customer_id:
        user.stripe_customer_id = stripe_customer_id
    return select_tier(
        db, user, tier, is_yearly,
        reason="checkout.session.completed", stripe_event_id=stripe_event_id,
    )


def price_changed(db: Session, subscription: Subscription, new_tier: Union[Tier, str], *,
                  stripe_price_id: Optional[str] = None, stripe_event_id: Optional[str] = None,
                  now: Optional[datetime] = None) -> Subscription:
    new_tier = Tier(new_tier)
    now = now or utcnow()
    if new_tier != subscription.tier:
        _change_tier(db, subscription, new_tier, reason="price_changed", stripe_event_id=stripe_event_id, now=now)
    else:
        subscription.last_renewal_date = now
        subscription.next_renewal_date = add_months(now, 1)
    if stripe_price_id:
        subscription.stripe_price_id = stripe_price_id
        subscription.is_yearly = billing.is_yearly_price(stripe_price_id)
    db.commit()
    return subscription


def _inform_billing(db: Session, subscription: Subscription, cancel: bool) -> None:
    if not subscription.stripe_subscription_id:
        return
    try:
        billing.set_cancel_at_period_end(subscription.stripe_subscription_id, cancel)
    except ExternalBillingError:
        record_reconciliation_issue(
            db,
            kind="billing_cancel_failed" if cancel else "billing_resume_failed",
            user_id=subscription.user_id,
            detail=f"Local cancel_at_period_end={cancel} but Stripe subscription "
                   f"{subscription.stripe_subscription_id} was not updated.",
        )


def request_cancellation(db: Session, user: User) -> Subscription:
    """Cancel at period end. Tier and credits stay until the period is over."""
    subscription = _subscription_of(user)
    if subscription.tier == Tier.free:
        raise SubscriptionRequired("There is no paid subscription to cancel.", tier=Tier.free.value)
    if subscription.cancel_at_period_end:
        return subscription
    subscription.cancel_at_period_end = True
    subscription.auto_renew = False
    db.commit()
    logger.info("Cancellation requested", extra={"user_id": user.id, "tier": subscription.tier.value})
    _inform_billing(db, subscription, cancel=True)
    return subscription


def resume_subscription(db: Session, user: User) -> Subscription:
    subscription = _subscription_of(user)
    if not subscription.cancel_at_period_end:
        return subscription
    subscription.cancel_at_period_end = False
    subscription.auto_renew = True
    db.commit()
    logger.info("Cancellation withdrawn", extra={"user_id": user.id, "tier": subscription.tier.value})
    _inform_billing(db, subscription, cancel=False)
    return subscription


def end_period(db: Session, subscription: Subscription, *, force: bool = False, reason: str = "period_ended",
               stripe_event_id: Optional[str] = None, now: Optional[datetime] = None) -> bool:
    """Drop a cancelled subscription to free. ``force`` is used when Stripe
    reports the subscription gone regardless of the local flag."""
    if not force and not subscription.cancel_at_period_end:
        return False
    now = now or utcnow()
    if subscription.tier != Tier.free:
        _change_tier(db, subscription, Tier.free, reason=reason, stripe_event_id=stripe_event_id, now=now)
    subscription.cancel_at_period_end = False
    subscription.is_yearly = False
    subscription.end_date = now
    subscription.stripe_subscription_id = None
    subscription.stripe_price_id = None
    db.commit()
    return True


def delete_account(db: Session, user: User) -> None:
    """Delete the user with their subscription, books and AI summaries.

    An active Stripe subscription is cancelled immediately first; if Stripe
    is unreachable the deletion still goes ahead.
    """
    user_id = user.id
    subscription = user.subscription
    stripe_subscription_id = subscription.stripe_subscription_id if subscription else None
    if stripe_subscription_id:
        try:
            billing.cancel_immediately(stripe_subscription_id)
        except ExternalBillingError:
            record_reconciliation_issue(
                db,
                kind="billing_cancel_failed",
                user_id=user_id,
                detail=f"Account deleted but Stripe subscription {stripe_subscription_id} is still active.",
            )
    db.delete(user)
    db.commit()
    logger.info("Account deleted", extra={"user_id": user_id})


def run_monthly_reset(db: Session, now: Optional[datetime] = None) -> dict:
    """Scheduled renewal batch, safe to re-run or resume after interruption.

    Ends subscriptions whose cancellation is due, sets every basic and
    premium balance to its allowance and starts a new period for those that
    are due. Free-tier balances are not touched.
    """
    now = now or utcnow()
    due = (
        db.query(Subscription)
        .filter(Subscription.cancel_at_period_end.is_(True), Subscription.next_renewal_date <= now)
        .all()
    )
    ended = sum(1 for subscription in due if end_period(db, subscription, now=now))

    reset = {}
    for tier in PAID_TIERS:
        allowance = reset_allowance(tier)
        result = db.execute(
            update(Subscription)
            .where(Subscription.tier == tier)
            .values(ai_credits_total=allowance, ai_credits_remaining=allowance)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        reset[tier.value] = result.rowcount
        credit_resets_total.labels(tier.value).inc(result.rowcount)

    renewed = db.execute(
        update(Subscription)
        .where(Subscription.tier.in_(PAID_TIERS), Subscription.next_renewal_date <= now)
        .values(last_renewal_date=now, next_renewal_date=add_months(now, 1))
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()

    logger.info(f"Monthly credit reset done: ended={ended} reset={reset} renewed={renewed}")
    return {"ended": ended, "reset": reset, "renewed": renewed}


# --- Billing webhook reconciliation ---

def _checkout_price_id(session: dict) -> Optional[str]:
    metadata = session.get("metadata") or {}
    if metadata.get("price_id"):
        return metadata["price_id"]
    if "line_items" in session:
        price_ids = [item["price"]["id"] for item in session["line_items"]["data"]]
    elif session.get("id"):
        price_ids = billing.list_checkout_price_ids(session["id"])
    else:
        price_ids = []
    known = [pid for pid in price_ids if billing.tier_for_price(pid)]
    if known:
        return max(known, key=lambda pid: billing.tier_rank(billing.tier_for_price(pid)))
    return price_ids[0] if price_ids else None


def _subscription_price_id(stripe_subscription: dict) -> Optional[str]:
    items = (stripe_subscription.get("items") or {}).get("data", [])
    for item in items:
        price_id = (item.get("price") or {}).get("id")
        if price_id:
            return price_id
    return None


def _on_checkout_completed(db: Session, session: dict, event_id: str) -> str:
    metadata = session.get("metadata") or {}
    identity = Identity(
        user_id=parse_user_id(metadata.get("user_id") or session.get("client_reference_id")),
        email=(session.get("customer_details") or {}).get("email") or session.get("customer_email"),
    )
    try:
        user = resolve_user(db, identity)
    except (Unauthorized, UserNotFound):
        raise InconsistentState(
            f"Checkout {session.get('id')} could not be matched to a user.", kind="unknown_customer",
        ) from None
    price_id = _checkout_price_id(session)
    tier = billing.tier_for_price(price_id)
    if tier is None:
        raise InconsistentState(
            f"Checkout {session.get('id')} used unmapped price {price_id!r}.",
            kind="unknown_price", user_id=user.id,
        )
    checkout_completed(
        db, user, tier, billing.is_yearly_price(price_id), session.get("subscription"),
        stripe_price_id=price_id,
        stripe_customer_id=session.get("customer"),
        stripe_event_id=event_id,
    )
    return "ok"


def _find_local_subscription(db: Session, stripe_subscription: dict) -> Subscription:
    stripe_id = stripe_subscription.get("id")
    subscription = get_subscription_by_stripe_id(db, stripe_id) if stripe_id else None
    if subscription is not None:
        return subscription
    user_id = (stripe_subscription.get("metadata") or {}).get("user_id")
    user_id = parse_user_id(user_id)
    user = get_user_by_id(db, user_id) if user_id is not None else None
    if user is None or user.subscription is None:
        raise InconsistentState(
            f"Stripe subscription {stripe_id} has no local record.", kind="subscription_not_found",
        )
    subscription = user.subscription
    if subscription.stripe_subscription_id and subscription.stripe_subscription_id != stripe_id:
        raise InconsistentState(
            f"Stripe reports subscription {stripe_id}, local record holds {subscription.stripe_subscription_id}.",
            kind="subscription_mismatch", user_id=user.id,
        )
    subscription.stripe_subscription_id = stripe_id
    return subscription


def _on_subscription_updated(db: Session, stripe_subscription: dict, event_id: str) -> str:
    subscription = _find_local_subscription(db, stripe_subscription)
    price_id = _subscription_price_id(stripe_subscription)
    tier = billing.tier_for_price(price_id)
    if tier is None:
        raise InconsistentState(
            f"Stripe subscription {stripe_subscription.get('id')} uses unmapped price {price_id!r}.",
            kind="unknown_price", user_id=subscription.user_id,
        )
    if tier != subscription.tier or price_id != subscription.stripe_price_id:
        price_changed(db, subscription, tier, stripe_price_id=price_id, stripe_event_id=event_id)
    cancel_pending = bool(stripe_subscription.get("cancel_at_period_end"))
    if cancel_pending != subscription.cancel_at_period_end:
        subscription.cancel_at_period_end = cancel_pending
        subscription.auto_renew = not cancel_pending
        logger.info(
            f"cancel_at_period_end set to {cancel_pending} from billing",
            extra={"user_id": subscription.user_id, "event_id": event_id},
        )
    db.commit()
    return "ok"


def _on_subscription_deleted(db: Session, stripe_subscription: dict, event_id: str) -> str:
    subscription = get_subscription_by_stripe_id(db, stripe_subscription.get("id"))
    if subscription is None:
        # Already ended locally, e.g. the account was deleted first.
        logger.info("Deleted Stripe subscription has no local record", extra={"event_id": event_id})
        return "subscription_not_found"
    end_period(db, subscription, force=True, reason="customer.subscription.deleted", stripe_event_id=event_id)
    return "ok"


EVENT_HANDLERS = {
    "checkout.session.completed": _on_checkout_completed,
    "customer.subscription.updated": _on_subscription_updated,
    "customer.subscription.deleted": _on_subscription_deleted,
}


def handle_billing_event(db: Session, event: dict) -> str:
    """Apply a verified Stripe event once. Redelivered events are ignored.

    Events that contradict local state are recorded for reconciliation and
    marked processed; they are never corrected by guessing.
    """
    event_id = event["id"]
    event_type = event["type"]
    if db.query(WebhookEvent).filter_by(stripe_event_id=event_id).first():
        increment_webhook_event(event_type, "duplicate")
        return "duplicate_ignored"

    handler = EVENT_HANDLERS.get(event_type)
    try:
        outcome = handler(db, event["data"]["object"], event_id) if handler else "ignored"
    except InconsistentState as exc:
        db.rollback()
        outcome = exc.extra.get("kind", "inconsistent_state")
        record_reconciliation_issue(
            db, kind=outcome, detail=exc.detail, user_id=exc.extra.get("user_id"), stripe_event_id=event_id,
        )
    except (UserNotFound, KeyError, TypeError) as exc:
        # Redelivery cannot fix a payload we cannot apply, so it is parked for review.
        db.rollback()
        outcome = "unprocessable_event"
        logger.exception(f"Billing event {event_type} could not be applied", extra={"event_id": event_id})
        record_reconciliation_issue(
            db, kind=outcome, stripe_event_id=event_id,
            detail=f"{event_type} could not be applied: {type(exc).__name__}: {exc}",
        )

    db.add(WebhookEvent(stripe_event_id=event_id, type=event_type, payload=json.dumps(event)))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        increment_webhook_event(event_type, "duplicate")
        return "duplicate_ignored"
    increment_webhook_event(event_type, outcome)
    logger.info(f"Billing event {event_type} processed: {outcome}", extra={"event_id": event_id})
    return outcome
