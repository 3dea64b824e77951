import json
import logging
import os

import stripe
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from readlog import billing
from readlog.db import engine, get_db
from readlog.errors import ExternalBillingError, ReadlogError
from readlog.logging_config import setup_logging
from readlog.metrics import increment_webhook_event
from readlog.middleware import (
    ErrorEnvelopeMiddleware, RequestIDMiddleware, SecurityHeadersMiddleware, TimingAccessLogMiddleware,
    http_error_handler, readlog_error_handler,
)
from readlog.models import Base
from readlog.routes.ai import router as ai_router
from readlog.routes.books import router as books_router
from readlog.routes.cron import router as cron_router
from readlog.routes.ops import router as ops_router
from readlog.routes.subscription import router as subscription_router
from readlog.routes.users import router as users_router
from readlog.services.subscriptions import handle_billing_event

load_dotenv()
setup_logging(os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger("readlog.main")

app = FastAPI(title="Readlog subscriptions")

# Starlette runs the last added middleware first.
app.add_middleware(ErrorEnvelopeMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(TimingAccessLogMiddleware)
app.add_middleware(RequestIDMiddleware)

app.add_exception_handler(ReadlogError, readlog_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)

@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ensured")

@app.post("/webhook/stripe")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    try:
        billing.verify_webhook(payload, sig_header)
        event = json.loads(payload)
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.warning(f"Rejected Stripe webhook: {e}")
        increment_webhook_event("unknown", "invalid_signature")
        return JSONResponse(status_code=400, content={"error": "Invalid Stripe signature"})

    try:
        outcome = handle_billing_event(db, event)
    except ExternalBillingError as e:
        # Not recorded as processed, so Stripe's redelivery will retry it.
        db.rollback()
        logger.error(f"Webhook {event.get('id')} deferred: {e.detail}", extra={"event_id": event.get("id")})
        return JSONResponse(status_code=502, content={"error": e.detail})
    return {"status": outcome}

app.include_router(ops_router)
app.include_router(users_router)
app.include_router(subscription_router)
app.include_router(books_router)
app.include_router(ai_router)
app.include_router(cron_router)
