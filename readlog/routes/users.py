import os
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from readlog.db import get_db
from readlog.errors import Unauthorized
from readlog.identity import Identity, get_current_user, get_identity
from readlog.models import User
from readlog.repository import list_open_reconciliation_issues
from readlog.routes.subscription import subscription_payload
from readlog.services.subscriptions import delete_account, signup

router = APIRouter()

ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "replace-me")

class SignupRequest(BaseModel):
    name: Optional[str] = None
    authProvider: str = "local"

@router.post("/api/user")
def provision_user(
    body: Optional[SignupRequest] = None,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    """First login from the identity provider: create the user on the free tier."""
    if not identity.email:
        raise Unauthorized("An authenticated email is required to create an account.")
    body = body or SignupRequest()
    user = signup(db, identity.email, name=body.name, auth_provider=body.authProvider, auth_provider_id=identity.subject)
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "subscription": subscription_payload(user.subscription),
    }

@router.delete("/api/user")
def delete_user(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    delete_account(db, user)
    return {"success": True}

@router.get("/admin/reconciliation")
def admin_reconciliation_issues(
    limit: int = Query(100, ge=1, le=500),
    admin_api_key: str = Header(None),
    db: Session = Depends(get_db),
):
    if not admin_api_key or not secrets.compare_digest(admin_api_key, ADMIN_API_KEY):
        raise HTTPException(status_code=403, detail="Forbidden")
    issues = list_open_reconciliation_issues(db, limit=limit)
    return [
        {
            "id": i.id,
            "kind": i.kind,
            "userId": i.user_id,
            "stripeEventId": i.stripe_event_id,
            "detail": i.detail,
            "createdAt": i.created_at,
        }
        for i in issues
    ]
