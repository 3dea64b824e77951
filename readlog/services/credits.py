"""AI credit ledger.

Credits are consumed with a single conditional UPDATE so that concurrent
requests for the same user can never drive the balance below zero or both
spend the last credit.
"""
import logging
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import update
from sqlalchemy.orm import Session

from readlog.errors import CreditsExhausted, UserNotFound
from readlog.metrics import credits_consumed_total, credits_exhausted_total
from readlog.models import Subscription, Tier
from readlog.repository import get_subscription_for_user
from readlog.services.catalog import limits_for
from readlog.utils import utcnow, add_months

logger = logging.getLogger("readlog.credits")


def _subscription_or_error(db: Session, user_id: int) -> Subscription:
    subscription = get_subscription_for_user(db, user_id)
    if subscription is None:
        raise UserNotFound(f"No subscription record for user {user_id}.")
    return subscription


def remaining(db: Session, user_id: int) -> int:
    return _subscription_or_error(db, user_id).ai_credits_remaining


def has_credits(db: Session, user_id: int) -> bool:
    return remaining(db, user_id) > 0


def use_credit(db: Session, user_id: int) -> int:
    """Consume one credit and return the new balance.

    Raises CreditsExhausted (nothing is written) when the balance is already
    zero and UserNotFound when the user has no subscription record.
    """
    stmt = (
        update(Subscription)
        .where(Subscription.user_id == user_id, Subscription.ai_credits_remaining > 0)
        .values(ai_credits_remaining=Subscription.ai_credits_remaining - 1)
        .returning(Subscription.ai_credits_remaining, Subscription.tier)
        .execution_options(synchronize_session=False)
    )
    row = db.execute(stmt).first()
    if row is not None:
        db.commit()
        new_remaining, tier = row
        credits_consumed_total.labels(tier.value).inc()
        logger.info(f"AI credit used, {new_remaining} left", extra={"user_id": user_id, "tier": tier.value})
        return new_remaining

    db.rollback()
    subscription = _subscription_or_error(db, user_id)
    credits_exhausted_total.inc()
    logger.info("AI credit use rejected, balance exhausted", extra={"user_id": user_id, "tier": subscription.tier.value})
    raise CreditsExhausted(
        tier=subscription.tier.value,
        credits_remaining=0,
        credits_total=subscription.ai_credits_total,
    )


def reset_allowance(tier: Union[Tier, str]) -> int:
    """Credit balance a subscription on ``tier`` is reset to each period."""
    return limits_for(tier).ai_credits_per_month


def apply_reset(subscription: Subscription, now: Optional[datetime] = None) -> Subscription:
    """Set the balance to the tier allowance and start a new renewal period.

    Assigns rather than adds, so applying it twice equals applying it once.
    The caller commits.
    """
    now = now or utcnow()
    allowance = reset_allowance(subscription.tier)
    subscription.ai_credits_total = allowance
    subscription.ai_credits_remaining = allowance
    subscription.last_renewal_date = now
    subscription.next_renewal_date = add_months(now, 1)
    return subscription


def credit_summary(subscription: Subscription) -> dict:
    return {
        "tier": subscription.tier.value,
        "credits_remaining": subscription.ai_credits_remaining,
        "credits_total": subscription.ai_credits_total,
    }
