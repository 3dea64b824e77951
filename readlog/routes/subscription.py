from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from readlog import billing
from readlog.db import get_db
from readlog.errors import UserNotFound
from readlog.identity import get_current_user
from readlog.models import Subscription, Tier, User
from readlog.services.catalog import catalog_as_dict, limits_for
from readlog.services.credits import credit_summary, use_credit
from readlog.services.entitlements import entitlements_for
from readlog.services.subscriptions import request_cancellation, resume_subscription, select_tier

router = APIRouter(prefix="/api", tags=["subscription"])

class SelectTierRequest(BaseModel):
    tier: str
    isYearly: Optional[bool] = None

class CheckoutRequest(BaseModel):
    priceId: str
    successUrl: str
    cancelUrl: str

class PriceChangeRequest(BaseModel):
    priceId: str

def _iso(value):
    return value.isoformat() if value else None

def subscription_payload(subscription: Subscription) -> dict:
    return {
        "tier": subscription.tier.value,
        "state": subscription.state,
        "startDate": _iso(subscription.start_date),
        "endDate": _iso(subscription.end_date),
        "isYearly": subscription.is_yearly,
        "aiCreditsRemaining": subscription.ai_credits_remaining,
        "aiCreditsTotal": subscription.ai_credits_total,
        "autoRenew": subscription.auto_renew,
        "lastRenewalDate": _iso(subscription.last_renewal_date),
        "nextRenewalDate": _iso(subscription.next_renewal_date),
        "stripePriceId": subscription.stripe_price_id,
        "stripeSubscriptionId": subscription.stripe_subscription_id,
        "cancelAtPeriodEnd": subscription.cancel_at_period_end,
    }

@router.get("/plans")
def get_plans():
    return {"plans": catalog_as_dict()}

@router.get("/subscription")
def get_subscription(user: User = Depends(get_current_user)):
    subscription = user.subscription
    if subscription is None:
        raise UserNotFound(f"User {user.id} has no subscription record.")
    return {
        "subscription": subscription_payload(subscription),
        "credits": credit_summary(subscription),
        "limits": limits_for(subscription.tier).to_dict(),
        "entitlements": entitlements_for(subscription.tier),
    }

@router.post("/subscription")
def update_subscription(body: SelectTierRequest, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    if body.tier not in {t.value for t in Tier}:
        raise HTTPException(status_code=400, detail="Invalid subscription tier")
    subscription = select_tier(db, user, body.tier, body.isYearly)
    return {"subscription": subscription_payload(subscription)}

@router.post("/subscription/use-credit")
def use_ai_credit(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    remaining = use_credit(db, user.id)
    return {
        "success": True,
        "creditsRemaining": remaining,
        "creditsTotal": user.subscription.ai_credits_total,
    }

@router.post("/subscription/cancel")
def cancel_subscription(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    subscription = request_cancellation(db, user)
    return {"subscription": subscription_payload(subscription)}

@router.post("/subscription/resume")
def resume(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    subscription = resume_subscription(db, user)
    return {"subscription": subscription_payload(subscription)}

@router.post("/create-checkout-session")
def create_checkout_session(body: CheckoutRequest, user: User = Depends(get_current_user)):
    if billing.tier_for_price(body.priceId) is None:
        raise HTTPException(status_code=400, detail="Unknown price")
    session = billing.create_checkout_session(
        price_id=body.priceId,
        user_id=user.id,
        email=user.email,
        success_url=body.successUrl,
        cancel_url=body.cancelUrl,
    )
    return {"url": session["url"]}

@router.post("/update-subscription")
def change_subscription_price(body: PriceChangeRequest, user: User = Depends(get_current_user)):
    """Ask Stripe to switch price; the resulting webhook updates local state."""
    if billing.tier_for_price(body.priceId) is None:
        raise HTTPException(status_code=400, detail="Unknown price")
    subscription = user.subscription
    if subscription is None or not subscription.stripe_subscription_id:
        raise HTTPException(status_code=404, detail="No active subscription found to update")
    updated = billing.change_price(subscription.stripe_subscription_id, body.priceId)
    return {"success": True, "subscriptionId": updated["id"]}
