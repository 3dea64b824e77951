import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from readlog.ai_client import DEFAULT_PREFERENCES, AuthorSummaryClient, get_summary_client
from readlog.db import get_db
from readlog.gating import AccessDecision, charge_after_action, ensure_feature, require_access
from readlog.models import AuthorSummary
from readlog.services.catalog import SubscriptionFeature

logger = logging.getLogger("readlog.ai")

router = APIRouter(prefix="/api", tags=["ai"])

class SummaryPreferences(BaseModel):
    language: str = DEFAULT_PREFERENCES["language"]
    style: str = DEFAULT_PREFERENCES["style"]
    length: str = DEFAULT_PREFERENCES["length"]

class AuthorSummaryRequest(BaseModel):
    author: str = Field(..., min_length=1, max_length=300)
    preferences: Optional[SummaryPreferences] = None
    refresh: bool = False

def _check_preferences(decision: AccessDecision, preferences: Optional[SummaryPreferences]) -> dict:
    if preferences is None:
        return dict(DEFAULT_PREFERENCES)
    chosen = preferences.model_dump()
    if chosen != DEFAULT_PREFERENCES:
        ensure_feature(decision, SubscriptionFeature.ai_customization)
    if chosen["length"] == "long":
        ensure_feature(decision, SubscriptionFeature.extended_ai_summary)
    return chosen

def _cached_summary(db: Session, user_id: int, author: str) -> Optional[AuthorSummary]:
    return (
        db.query(AuthorSummary)
        .filter(AuthorSummary.user_id == user_id, AuthorSummary.author_name == author)
        .order_by(AuthorSummary.created_at.desc())
        .first()
    )

@router.post("/author-summary")
def author_summary(
    body: AuthorSummaryRequest,
    db: Session = Depends(get_db),
    decision: AccessDecision = Depends(require_access(SubscriptionFeature.ai_author_summary, require_ai_credits=True)),
    client: AuthorSummaryClient = Depends(get_summary_client),
):
    """Generate an AI author profile, charging one credit once it exists.

    A summary already stored for this user and author is returned without
    calling the AI service or spending a credit, unless ``refresh`` is set.
    """
    author = body.author.strip()
    preferences = _check_preferences(decision, body.preferences)
    user_id = decision.user.id

    if not body.refresh:
        cached = _cached_summary(db, user_id, author)
        if cached is not None:
            return {
                "author": author,
                "summary": cached.summary,
                "cached": True,
                "charged": False,
                "creditsRemaining": decision.credits_remaining,
            }

    summary = client.generate(author, preferences)

    try:
        db.add(AuthorSummary(user_id=user_id, author_name=author, summary=summary))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Could not store author summary", extra={"user_id": user_id})

    credits_remaining = charge_after_action(db, decision, action=f"author summary for {author!r}")
    return {
        "author": author,
        "summary": summary,
        "cached": False,
        "charged": credits_remaining is not None,
        "creditsRemaining": credits_remaining,
    }
