"""Error taxonomy for the entitlement core.

Every error carries a machine-readable ``code`` and an HTTP status; extra
keyword arguments (tier, credits remaining, limits) are surfaced to the caller
so it can render an upgrade prompt without a second round trip.
"""
import os

UPGRADE_URL = os.getenv("UPGRADE_URL", "https://readlog.app/subscription")


class ReadlogError(Exception):
    status_code = 400
    code = "BAD_REQUEST"
    default_detail = "Request could not be processed."

    def __init__(self, detail: str = None, **extra):
        self.detail = detail or self.default_detail
        self.extra = extra
        super().__init__(self.detail)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.detail, **self.extra}


class Unauthorized(ReadlogError):
    status_code = 401
    code = "UNAUTHORIZED"
    default_detail = "Authentication required."


class UserNotFound(ReadlogError):
    status_code = 404
    code = "USER_NOT_FOUND"
    default_detail = "User not found."


class SubscriptionRequired(ReadlogError):
    status_code = 403
    code = "SUBSCRIPTION_REQUIRED"
    default_detail = "Subscription tier does not include this feature."

    def __init__(self, detail: str = None, **extra):
        extra.setdefault("upgrade_url", UPGRADE_URL)
        super().__init__(detail, **extra)


class CreditsExhausted(ReadlogError):
    status_code = 403
    code = "CREDITS_EXHAUSTED"
    default_detail = "No AI credits remaining."

    def __init__(self, detail: str = None, **extra):
        extra.setdefault("credits_remaining", 0)
        extra.setdefault("upgrade_url", UPGRADE_URL)
        super().__init__(detail, **extra)


class BookLimitReached(ReadlogError):
    status_code = 402
    code = "BOOK_LIMIT_REACHED"
    default_detail = "Your plan does not allow more books."

    def __init__(self, detail: str = None, **extra):
        extra.setdefault("upgrade_url", UPGRADE_URL)
        super().__init__(detail, **extra)


class ExternalBillingError(ReadlogError):
    status_code = 502
    code = "EXTERNAL_BILLING_ERROR"
    default_detail = "Billing provider request failed."


class InconsistentState(ReadlogError):
    status_code = 409
    code = "INCONSISTENT_STATE"
    default_detail = "Subscription state diverges from billing records."


class AIServiceUnavailable(ReadlogError):
    status_code = 503
    code = "AI_SERVICE_UNAVAILABLE"
    default_detail = "AI generation is temporarily unavailable."
