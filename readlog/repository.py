import logging
from typing import Optional

from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from readlog.models import User, Tier, Subscription, SubscriptionAudit, ReconciliationIssue, Book
from readlog.metrics import reconciliation_issues_total
from readlog.utils import normalize_email, utcnow, add_months

logger = logging.getLogger("readlog.repository")

def get_user_by_email(db: Session, email: str) -> Optional[User]:
    email = normalize_email(email)
    return db.query(User).filter(User.email == email).first()

def get_user_by_id(db: Session, user_id: int) -> Optional[User]:
    return db.get(User, user_id)

def get_user_by_auth_provider_id(db: Session, provider_id: str) -> Optional[User]:
    return db.query(User).filter(User.auth_provider_id == provider_id).first()

def get_subscription_for_user(db: Session, user_id: int) -> Optional[Subscription]:
    return db.query(Subscription).filter(Subscription.user_id == user_id).first()

def get_subscription_by_stripe_id(db: Session, stripe_subscription_id: str) -> Optional[Subscription]:
    return db.query(Subscription).filter(Subscription.stripe_subscription_id == stripe_subscription_id).first()

def create_user(db: Session, email: str, tier: Tier, credits: int, name=None, auth_provider="local",
                auth_provider_id=None, stripe_customer_id=None) -> User:
    email = normalize_email(email)
    now = utcnow()
    user = User(
        email=email,
        name=name,
        auth_provider=auth_provider,
        auth_provider_id=auth_provider_id,
        stripe_customer_id=stripe_customer_id,
    )
    user.subscription = Subscription(
        tier=tier,
        start_date=now,
        is_yearly=False,
        ai_credits_remaining=credits,
        ai_credits_total=credits,
        auto_renew=True,
        last_renewal_date=now,
        next_renewal_date=add_months(now, 1),
        cancel_at_period_end=False,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    db.refresh(user)
    return user

def count_books(db: Session, user_id: int) -> int:
    return db.query(Book).filter(Book.user_id == user_id).count()

def record_subscription_audit(db: Session, *, user, stripe_event_id, old_tier, new_tier, reason):
    audit = SubscriptionAudit(
        user_id=user.id,
        email=user.email,
        stripe_event_id=stripe_event_id,
        old_tier=old_tier,
        new_tier=new_tier,
        reason=reason,
    )
    db.add(audit)
    return audit

def record_reconciliation_issue(db: Session, *, kind: str, detail: str, user_id=None, stripe_event_id=None):
    """Persist an inconsistency for manual follow-up. Commits on its own."""
    issue = ReconciliationIssue(user_id=user_id, kind=kind, detail=detail, stripe_event_id=stripe_event_id)
    db.add(issue)
    db.commit()
    reconciliation_issues_total.labels(kind).inc()
    logger.error(
        f"Reconciliation issue recorded: {kind}: {detail}",
        extra={"user_id": user_id, "event_id": stripe_event_id},
    )
    return issue

def list_open_reconciliation_issues(db: Session, limit: int = 100):
    return (
        db.query(ReconciliationIssue)
        .filter(ReconciliationIssue.resolved.is_(False))
        .order_by(ReconciliationIssue.created_at.desc())
        .limit(limit)
        .all()
    )
