from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Enum as SqlEnum, Text, func, ForeignKey,
    CheckConstraint, Index,
)
from sqlalchemy.orm import declarative_base, relationship
from enum import Enum as PyEnum

from readlog.utils import utcnow, add_months

Base = declarative_base()

class Tier(PyEnum):
    free = "free"
    basic = "basic"
    premium = "premium"

class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    email = Column(String(320), unique=True, index=True, nullable=False)
    name = Column(String(200), nullable=True)
    auth_provider = Column(String(50), default="local", nullable=False)  # local, google, facebook, apple
    auth_provider_id = Column(String(255), nullable=True, index=True)
    stripe_customer_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    subscription = relationship(
        "Subscription", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    books = relationship("Book", back_populates="user", cascade="all, delete-orphan")
    author_summaries = relationship("AuthorSummary", back_populates="user", cascade="all, delete-orphan")

class Subscription(Base):
    __tablename__ = "subscriptions"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    tier = Column(SqlEnum(Tier), default=Tier.free, nullable=False, index=True)
    start_date = Column(DateTime, default=utcnow, nullable=False)
    end_date = Column(DateTime, nullable=True)
    is_yearly = Column(Boolean, default=False, nullable=False)
    ai_credits_remaining = Column(Integer, nullable=False)
    ai_credits_total = Column(Integer, nullable=False)
    auto_renew = Column(Boolean, default=True, nullable=False)
    last_renewal_date = Column(DateTime, default=utcnow, nullable=False)
    next_renewal_date = Column(DateTime, default=lambda: add_months(utcnow(), 1), nullable=False)
    stripe_price_id = Column(String, nullable=True)
    stripe_subscription_id = Column(String, nullable=True, index=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    user = relationship("User", back_populates="subscription")
    __table_args__ = (
        CheckConstraint("ai_credits_remaining >= 0", name="ck_credits_non_negative"),
        CheckConstraint("ai_credits_remaining <= ai_credits_total", name="ck_credits_within_total"),
    )

    @property
    def state(self) -> str:
        """Lifecycle state name, e.g. ``basic-cancel-pending``."""
        if self.tier == Tier.free:
            return "free"
        return f"{self.tier.value}-{'cancel-pending' if self.cancel_at_period_end else 'active'}"

class Book(Base):
    __tablename__ = "books"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(500), nullable=False)
    author = Column(String(300), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    user = relationship("User", back_populates="books")

class AuthorSummary(Base):
    __tablename__ = "author_summaries"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    author_name = Column(String(300), nullable=False)
    summary = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    user = relationship("User", back_populates="author_summaries")
    __table_args__ = (
        Index("ix_author_summary_user_author", "user_id", "author_name"),
    )

class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    id = Column(Integer, primary_key=True)
    stripe_event_id = Column(String, unique=True, nullable=False)
    type = Column(String, nullable=False)
    payload = Column(Text, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

class SubscriptionAudit(Base):
    __tablename__ = "subscription_audit"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, index=True, nullable=False)
    email = Column(String(320), nullable=False)
    stripe_event_id = Column(String, nullable=True)
    old_tier = Column(SqlEnum(Tier), nullable=True)
    new_tier = Column(SqlEnum(Tier), nullable=False)
    reason = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow)

class ReconciliationIssue(Base):
    """Local state that diverged from billing truth or an action that was not charged."""
    __tablename__ = "reconciliation_issues"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, index=True, nullable=True)
    kind = Column(String(64), nullable=False)  # uncharged_action, unknown_price, subscription_mismatch, ...
    detail = Column(Text, nullable=False)
    stripe_event_id = Column(String, nullable=True)
    resolved = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)
