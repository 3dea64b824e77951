import logging
import os
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session
from dotenv import load_dotenv

from readlog.db import get_db
from readlog.services.subscriptions import run_monthly_reset

load_dotenv()
CRON_SECRET = os.getenv("CRON_SECRET")

logger = logging.getLogger("readlog.cron")

router = APIRouter(prefix="/api/cron", tags=["cron"])

def _authorize(received: Optional[str]) -> None:
    if not CRON_SECRET:
        logger.error("CRON_SECRET is not set, refusing to run the credit reset")
        raise HTTPException(status_code=500, detail="Configuration error")
    if not received or not secrets.compare_digest(received.encode(), CRON_SECRET.encode()):
        logger.warning("Unauthorized attempt to run the credit reset")
        raise HTTPException(status_code=401, detail="Unauthorized")

def _run(db: Session) -> dict:
    result = run_monthly_reset(db)
    total = sum(result["reset"].values())
    return {"message": f"Reset credits for {total} subscriptions.", **result}

@router.get("/reset-credits/{secret}")
def reset_credits_by_path(secret: str, db: Session = Depends(get_db)):
    _authorize(secret)
    return _run(db)

@router.get("/reset-credits")
def reset_credits(authorization: Optional[str] = Header(None), db: Session = Depends(get_db)):
    token = authorization[len("Bearer "):] if authorization and authorization.startswith("Bearer ") else None
    _authorize(token)
    return _run(db)
