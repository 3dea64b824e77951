import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from readlog.db import engine_options, get_db
from readlog.main import app
from readlog.models import Base, Tier
from readlog.services.subscriptions import select_tier, signup

@pytest.fixture
def engine(tmp_path):
    # File backed so separate sessions get separate connections, as in production.
    url = f"sqlite:///{tmp_path / 'test.db'}"
    engine = create_engine(url, **engine_options(url))
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()

@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)

@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()

@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()
    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()

@pytest.fixture
def make_user(db):
    def _make(email, tier=Tier.free, credits=None, stripe_subscription_id=None):
        user = signup(db, email)
        if tier != Tier.free:
            select_tier(db, user, tier)
        subscription = user.subscription
        if stripe_subscription_id:
            subscription.stripe_subscription_id = stripe_subscription_id
        if credits is not None:
            subscription.ai_credits_remaining = credits
        db.commit()
        return user
    return _make

@pytest.fixture
def auth_headers():
    def _headers(user):
        return {"X-Auth-Subject": f"auth0|{user.id}", "X-Auth-Email": user.email}
    return _headers
