import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Union

from fastapi import Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from readlog.db import get_db
from readlog.errors import BookLimitReached, CreditsExhausted, ReadlogError, SubscriptionRequired, UserNotFound
from readlog.identity import Identity, get_identity, resolve_user
from readlog.metrics import access_denied_total
from readlog.models import Subscription, Tier, User
from readlog.repository import count_books, record_reconciliation_issue
from readlog.services.catalog import SubscriptionFeature, limits_for
from readlog.services.credits import has_credits, use_credit
from readlog.services.entitlements import can_access, has_reached_book_limit

logger = logging.getLogger("readlog.gating")

class DenialReason(str, Enum):
    subscription_required = "SUBSCRIPTION_REQUIRED"
    credits_exhausted = "CREDITS_EXHAUSTED"

@dataclass
class AccessDecision:
    allowed: bool
    tier: Tier
    credits_remaining: int
    credits_total: int
    reason: Optional[DenialReason] = None
    feature: Optional[SubscriptionFeature] = None
    user: Optional[User] = None
    subscription: Optional[Subscription] = None

    def denial_error(self) -> ReadlogError:
        details = {
            "tier": self.tier.value,
            "credits_remaining": self.credits_remaining,
            "credits_total": self.credits_total,
        }
        if self.reason == DenialReason.subscription_required:
            return SubscriptionRequired(
                f"Feature '{self.feature.value}' is not included in the {self.tier.value} plan.",
                feature=self.feature.value,
                **details,
            )
        return CreditsExhausted(**details)

def check_access(
    db: Session,
    identity: Identity,
    feature: Optional[Union[SubscriptionFeature, str]] = None,
    require_ai_credits: bool = False,
) -> AccessDecision:
    """Pre-flight check for a gated operation.

    Entitlement is evaluated before credits, so a tier lacking the feature is
    denied as SUBSCRIPTION_REQUIRED whatever its balance. Unauthorized and
    UserNotFound propagate as exceptions.
    """
    user = resolve_user(db, identity)
    subscription = user.subscription
    if subscription is None:
        raise UserNotFound(f"User {user.id} has no subscription record.")
    feature = SubscriptionFeature.parse(feature) if feature is not None else None

    decision = AccessDecision(
        allowed=True,
        tier=subscription.tier,
        credits_remaining=subscription.ai_credits_remaining,
        credits_total=subscription.ai_credits_total,
        feature=feature,
    )
    if feature is not None and not can_access(subscription.tier, feature):
        decision.allowed = False
        decision.reason = DenialReason.subscription_required
    elif require_ai_credits and not has_credits(db, user.id):
        decision.allowed = False
        decision.reason = DenialReason.credits_exhausted

    if not decision.allowed:
        access_denied_total.labels(decision.reason.value, subscription.tier.value).inc()
        logger.info(
            f"Access denied: {decision.reason.value}",
            extra={"user_id": user.id, "tier": subscription.tier.value},
        )
        return decision

    decision.user = user
    decision.subscription = subscription
    return decision

def require_access(feature: Optional[Union[SubscriptionFeature, str]] = None, require_ai_credits: bool = False):
    """FastAPI dependency factory: returns the AccessDecision or raises the denial."""
    if feature is not None:
        feature = SubscriptionFeature.parse(feature)

    def dep(identity: Identity = Depends(get_identity), db: Session = Depends(get_db)) -> AccessDecision:
        decision = check_access(db, identity, feature=feature, require_ai_credits=require_ai_credits)
        if not decision.allowed:
            raise decision.denial_error()
        return decision
    return dep

def ensure_feature(decision: AccessDecision, feature: Union[SubscriptionFeature, str]) -> None:
    """Raise SUBSCRIPTION_REQUIRED if an allowed decision's tier lacks ``feature``."""
    feature = SubscriptionFeature.parse(feature)
    if can_access(decision.tier, feature):
        return
    denied = replace(decision, allowed=False, reason=DenialReason.subscription_required, feature=feature)
    access_denied_total.labels(denied.reason.value, decision.tier.value).inc()
    raise denied.denial_error()

def enforce_book_limit(db: Session, user: User) -> None:
    if user.subscription is None:
        raise UserNotFound(f"User {user.id} has no subscription record.")
    tier = user.subscription.tier
    current = count_books(db, user.id)
    if has_reached_book_limit(tier, current):
        raise BookLimitReached(
            f"Your plan allows up to {limits_for(tier).max_books} books.",
            tier=tier.value,
            limit=limits_for(tier).max_books,
            current=current,
        )

def charge_after_action(db: Session, decision: AccessDecision, action: str) -> Optional[int]:
    """Deduct the credit for an action that has already been performed.

    The action's result has been produced by the time this runs, so a failed
    deduction never fails the request: it is logged and recorded for manual
    reconciliation, and None is returned instead of the new balance.
    """
    user_id = decision.user.id
    try:
        return use_credit(db, user_id)
    except (CreditsExhausted, UserNotFound) as exc:
        reason = exc.code
    except SQLAlchemyError as exc:
        db.rollback()
        reason = type(exc).__name__
    record_reconciliation_issue(
        db,
        kind="uncharged_action",
        user_id=user_id,
        detail=f"{action} completed for user {user_id} but credit deduction failed ({reason}).",
    )
    return None
