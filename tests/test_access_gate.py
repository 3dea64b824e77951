import pytest

from readlog.ai_client import AuthorSummaryClient, get_summary_client
from readlog.errors import AIServiceUnavailable, Unauthorized, UserNotFound
from readlog.gating import DenialReason, charge_after_action, check_access, enforce_book_limit
from readlog.identity import Identity, parse_user_id, resolve_user
from readlog.main import app
from readlog.models import AuthorSummary, Book, ReconciliationIssue, Tier
from readlog.services.catalog import SubscriptionFeature
from readlog.services.credits import remaining

class FakeSummaryClient(AuthorSummaryClient):
    def __init__(self, text="Karel Čapek was a Czech writer."):
        super().__init__(api_key="test")
        self.text = text
        self.calls = []

    def generate(self, author, preferences=None):
        self.calls.append((author, preferences))
        return self.text

class DownSummaryClient(AuthorSummaryClient):
    def generate(self, author, preferences=None):
        raise AIServiceUnavailable()

@pytest.fixture
def summary_client():
    fake = FakeSummaryClient()
    app.dependency_overrides[get_summary_client] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_summary_client, None)

def test_free_tier_needs_subscription_for_ai(client, make_user, summary_client, auth_headers):
    user = make_user("free@ex.com")
    resp = client.post("/api/author-summary", json={"author": "Karel Čapek"}, headers=auth_headers(user))
    assert resp.status_code == 403
    error = resp.json()["error"]
    assert error["code"] == "SUBSCRIPTION_REQUIRED"
    assert error["feature"] == "aiAuthorSummary"
    assert error["tier"] == "free"
    assert "upgrade_url" in error
    assert summary_client.calls == []

def test_basic_with_no_credits_is_exhausted(client, make_user, summary_client, auth_headers):
    user = make_user("broke@ex.com", Tier.basic, credits=0)
    resp = client.post("/api/author-summary", json={"author": "Karel Čapek"}, headers=auth_headers(user))
    assert resp.status_code == 403
    error = resp.json()["error"]
    assert error["code"] == "CREDITS_EXHAUSTED"
    assert error["credits_remaining"] == 0
    assert error["credits_total"] == 50
    assert summary_client.calls == []

def test_basic_with_credits_is_allowed_then_use_credit(client, db, make_user, auth_headers):
    user = make_user("ok@ex.com", Tier.basic, credits=5)
    decision = check_access(db, Identity(email="ok@ex.com"), SubscriptionFeature.ai_author_summary, True)
    assert decision.allowed
    assert decision.credits_remaining == 5
    assert decision.reason is None

    resp = client.post("/api/subscription/use-credit", headers=auth_headers(user))
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "creditsRemaining": 4, "creditsTotal": 50}

def test_feature_denial_wins_over_credit_balance(db, make_user):
    make_user("both@ex.com", credits=0)
    decision = check_access(db, Identity(email="both@ex.com"), "aiAuthorSummary", require_ai_credits=True)
    assert not decision.allowed
    assert decision.reason == DenialReason.subscription_required
    assert decision.user is None

def test_anonymous_and_unknown_callers(db, client):
    with pytest.raises(Unauthorized):
        check_access(db, Identity())
    with pytest.raises(UserNotFound):
        check_access(db, Identity(email="nobody@ex.com"))
    resp = client.get("/api/subscription")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "UNAUTHORIZED"

def test_identity_resolution_order(db, make_user):
    by_id = make_user("first@ex.com")
    by_provider = make_user("second@ex.com")
    by_provider.auth_provider_id = "google-oauth2|42"
    db.commit()

    assert resolve_user(db, Identity(user_id=by_id.id, email="second@ex.com")).id == by_id.id
    assert resolve_user(db, Identity(subject="google-oauth2|42", email="first@ex.com")).id == by_provider.id
    assert resolve_user(db, Identity(subject="unknown|1", email="First@Ex.com")).id == by_id.id

def test_numeric_subject_is_never_a_local_id(db, make_user):
    alice = make_user("alice@ex.com", Tier.premium)
    identity = Identity(subject=str(alice.id), email="bob@ex.com")
    with pytest.raises(UserNotFound):
        resolve_user(db, identity)

def test_numeric_subject_of_new_user_does_not_reach_existing_account(client, make_user):
    alice = make_user("alice@ex.com", Tier.premium)
    headers = {"X-Auth-Subject": str(alice.id), "X-Auth-Email": "bob@ex.com"}

    created = client.post("/api/user", headers=headers)
    assert created.status_code == 200
    assert created.json()["id"] != alice.id

    resp = client.get("/api/subscription", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["subscription"]["tier"] == "free"
    # the numeric subject alone resolves to bob, whose provider id it is
    resp = client.get("/api/subscription", headers={"X-Auth-Subject": str(alice.id)})
    assert resp.json()["subscription"]["tier"] == "free"

def test_oversized_numeric_subject_falls_back_to_email(client, make_user):
    user = make_user("google@ex.com", Tier.basic)
    headers = {"X-Auth-Subject": "117234567890123456789", "X-Auth-Email": "google@ex.com"}
    resp = client.get("/api/subscription", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["subscription"]["tier"] == "basic"

def test_parse_user_id_rejects_values_outside_the_key_range():
    assert parse_user_id("42") == 42
    assert parse_user_id(7) == 7
    assert parse_user_id("117234567890123456789") is None
    assert parse_user_id("0") is None
    assert parse_user_id("-3") is None
    assert parse_user_id("auth0|5") is None
    assert parse_user_id(None) is None

def test_author_summary_charges_after_generation(client, db, make_user, summary_client, auth_headers):
    user = make_user("writer@ex.com", Tier.basic, credits=2)
    resp = client.post("/api/author-summary", json={"author": "Karel Čapek"}, headers=auth_headers(user))
    assert resp.status_code == 200
    body = resp.json()
    assert body["summary"] == summary_client.text
    assert body["charged"] is True
    assert body["cached"] is False
    assert body["creditsRemaining"] == 1
    assert db.query(AuthorSummary).filter_by(user_id=user.id).count() == 1

    again = client.post("/api/author-summary", json={"author": "Karel Čapek"}, headers=auth_headers(user))
    assert again.json()["cached"] is True
    assert again.json()["charged"] is False
    assert len(summary_client.calls) == 1
    db.expire_all()
    assert remaining(db, user.id) == 1

def test_custom_preferences_need_premium(client, make_user, summary_client, auth_headers):
    user = make_user("custom@ex.com", Tier.basic, credits=5)
    resp = client.post(
        "/api/author-summary",
        json={"author": "Božena Němcová", "preferences": {"language": "en", "style": "academic", "length": "medium"}},
        headers=auth_headers(user),
    )
    assert resp.status_code == 403
    assert resp.json()["error"]["feature"] == "aiCustomization"
    assert summary_client.calls == []

def test_premium_can_request_long_summary(client, make_user, summary_client, auth_headers):
    user = make_user("long@ex.com", Tier.premium)
    resp = client.post(
        "/api/author-summary",
        json={"author": "Jaroslav Hašek", "preferences": {"language": "cs", "style": "creative", "length": "long"}},
        headers=auth_headers(user),
    )
    assert resp.status_code == 200
    assert resp.json()["creditsRemaining"] == 99
    assert summary_client.calls[0][1]["length"] == "long"

def test_failed_generation_costs_nothing(client, db, make_user, auth_headers):
    user = make_user("down@ex.com", Tier.basic, credits=3)
    app.dependency_overrides[get_summary_client] = lambda: DownSummaryClient(api_key="test")
    try:
        resp = client.post("/api/author-summary", json={"author": "Karel Čapek"}, headers=auth_headers(user))
    finally:
        app.dependency_overrides.pop(get_summary_client, None)
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "AI_SERVICE_UNAVAILABLE"
    db.expire_all()
    assert remaining(db, user.id) == 3

def test_uncharged_action_is_recorded(db, make_user):
    user = make_user("drained@ex.com", Tier.basic, credits=1)
    decision = check_access(db, Identity(email="drained@ex.com"), "aiAuthorSummary", True)
    assert decision.allowed
    # balance drained by a concurrent request between the check and the charge
    user.subscription.ai_credits_remaining = 0
    db.commit()

    assert charge_after_action(db, decision, "author summary") is None
    issue = db.query(ReconciliationIssue).one()
    assert issue.kind == "uncharged_action"
    assert issue.user_id == user.id

def test_book_limit_enforced_for_free_tier(client, db, make_user, auth_headers):
    user = make_user("shelf@ex.com")
    for i in range(5):
        db.add(Book(user_id=user.id, title=f"Book {i}"))
    db.commit()
    resp = client.post("/api/books", json={"title": "One too many"}, headers=auth_headers(user))
    assert resp.status_code == 402
    error = resp.json()["error"]
    assert error["code"] == "BOOK_LIMIT_REACHED"
    assert error["limit"] == 5
    assert error["current"] == 5

def test_premium_books_unbounded(client, make_user, auth_headers):
    user = make_user("library@ex.com", Tier.premium)
    resp = client.post("/api/books", json={"title": "Válka s mloky", "author": "Karel Čapek"}, headers=auth_headers(user))
    assert resp.status_code == 201
    listing = client.get("/api/books", headers=auth_headers(user)).json()
    assert listing["count"] == 1
    assert listing["limit"] is None

def test_book_limit_without_subscription_record(client, db, make_user, auth_headers):
    user = make_user("orphan@ex.com")
    user.subscription = None
    db.commit()

    with pytest.raises(UserNotFound):
        enforce_book_limit(db, user)
    for resp in (
        client.get("/api/books", headers=auth_headers(user)),
        client.post("/api/books", json={"title": "Krakatit"}, headers=auth_headers(user)),
    ):
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "USER_NOT_FOUND"
