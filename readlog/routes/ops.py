import os

import stripe
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from readlog.db import get_db
from readlog.metrics import metrics_endpoint
from readlog.utils import utcnow

router = APIRouter(tags=["ops"])

start_time = utcnow()

@router.get("/healthz")
def healthz():
    uptime = (utcnow() - start_time).total_seconds()
    return {"status": "ok", "uptime_seconds": uptime}

@router.get("/readyz")
def readyz(db: Session = Depends(get_db)):
    checks = {}
    try:
        db.execute(text("SELECT 1"))
        checks["db"] = True
    except SQLAlchemyError:
        checks["db"] = False
    if os.getenv("READINESS_STRIPE_CHECK", "false").lower() == "true" and os.getenv("STRIPE_API_KEY"):
        try:
            stripe.Balance.retrieve()
            checks["stripe"] = True
        except stripe.StripeError:
            checks["stripe"] = False
    else:
        checks["stripe"] = "skipped"
    checks["ok"] = all(v is True or v == "skipped" for v in checks.values())
    return checks

@router.get("/metrics")
def metrics():
    return metrics_endpoint()
