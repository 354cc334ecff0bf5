import os

# Settings are read at import time; point everything at in-memory SQLite and inline task execution.
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["CELERY_BROKER_URL"] = ""
os.environ.setdefault("INTERNAL_API_TOKEN", "test_internal_token")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tenantsync.analytics.models import AnalyticsBase
from tenantsync.analytics.sink import AnalyticsSink
from tenantsync.core import config as app_config
from tenantsync.core import database
from tenantsync.core.base import Base
from tenantsync.core.database import get_db

# Import models so they register with SQLAlchemy metadata.
from tenantsync.models.billing import OrganizationSubscription, StripeCustomer  # noqa: F401
from tenantsync.models.directory import Organization, OrganizationDomain, OrganizationMembership, Role, User  # noqa: F401
from tenantsync.models.events import EventCursor, EventFailure, ProcessedEvent  # noqa: F401
from tenantsync.models.stripe_event import StripeWebhookEvent  # noqa: F401
from tenantsync.models.sync import DeadLetterEntry, SyncStatus  # noqa: F401

from tenantsync.services import billing  # noqa: F401  registers subscription sync operations
from tenantsync.services import sync_workflow
from tenantsync.services.sync_workflow import SyncJob, SyncWorkflow

INTERNAL_TOKEN = "test_internal_token"

PRICE_IDS = {
    "STRIPE_PRICE_PERSONAL_MONTHLY": "price_personal_month",
    "STRIPE_PRICE_PERSONAL_YEARLY": "price_personal_year",
    "STRIPE_PRICE_PRO_MONTHLY": "price_pro_month",
    "STRIPE_PRICE_PRO_YEARLY": "price_pro_year",
    "STRIPE_PRICE_ENTERPRISE_MONTHLY": "price_enterprise_month",
    "STRIPE_PRICE_ENTERPRISE_YEARLY": "price_enterprise_year",
}


@pytest.fixture(scope="session")
def db_engine():
    # In-memory SQLite for fast, isolated tests.
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    AnalyticsBase.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture()
def db_session(db_engine, session_factory):
    # Important: because we use an in-memory SQLite DB with StaticPool, the DB
    # persists across tests. Reset schema per test to avoid cross-test coupling.
    Base.metadata.drop_all(bind=db_engine)
    AnalyticsBase.metadata.drop_all(bind=db_engine)
    Base.metadata.create_all(bind=db_engine)
    AnalyticsBase.metadata.create_all(bind=db_engine)

    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def _task_sessions(monkeypatch, session_factory):
    """Celery tasks open their own sessions; bind them to the test engine."""
    monkeypatch.setattr(database, "SessionLocal", session_factory)


@pytest.fixture(autouse=True)
def analytics_sink(monkeypatch, session_factory):
    """Analytics mirror backed by the same in-memory database."""
    sink = AnalyticsSink(session_factory)
    monkeypatch.setattr(sync_workflow, "get_analytics_sink", lambda: sink)
    return sink


@pytest.fixture(autouse=True)
def scheduled_syncs(monkeypatch):
    """
    Record sync attempts instead of running them, so tests drive retries
    one attempt at a time (see run_sync_jobs).
    """
    calls: list[dict] = []

    def _fake_enqueue(task, *args, countdown=None, **kwargs):
        calls.append({"task": task.name, "args": args, "kwargs": kwargs, "countdown": countdown})

    monkeypatch.setattr(sync_workflow, "enqueue", _fake_enqueue)
    return calls


@pytest.fixture()
def run_sync_jobs(db_session, scheduled_syncs):
    """
    Execute recorded sync attempts in order, including any they reschedule.
    Returns the outcome of each attempt run.
    """
    state = {"next": 0}

    def _run(limit: int = 50) -> list[str]:
        outcomes: list[str] = []
        while state["next"] < len(scheduled_syncs) and len(outcomes) < limit:
            call = scheduled_syncs[state["next"]]
            state["next"] += 1
            outcomes.append(SyncWorkflow(db_session).run_attempt(SyncJob(**call["kwargs"])))
        return outcomes

    return _run


@pytest.fixture(autouse=True)
def _reset_mutable_settings():
    """
    Tests tweak global settings (app_config.settings.*). Because that object is
    process-global, restore values after each test to avoid cross-test coupling.
    """
    keys = [
        "INTERNAL_API_TOKEN",
        "WORKOS_WEBHOOK_USERS_SECRET",
        "WORKOS_WEBHOOK_ORGANIZATIONS_SECRET",
        "WORKOS_WEBHOOK_MEMBERSHIPS_SECRET",
        "WORKOS_WEBHOOK_TOLERANCE_SECONDS",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "EVENTS_POLL_PAGE_SIZE",
        "EVENTS_POLL_RANGE_START",
        "SYNC_MAX_RETRIES",
        "SYNC_INITIAL_DELAY_SECONDS",
        "SYNC_MAX_DELAY_SECONDS",
        *PRICE_IDS,
    ]
    original = {k: getattr(app_config.settings, k) for k in keys}

    settings = app_config.settings
    settings.INTERNAL_API_TOKEN = INTERNAL_TOKEN
    settings.WORKOS_WEBHOOK_USERS_SECRET = "whsec_users"
    settings.WORKOS_WEBHOOK_ORGANIZATIONS_SECRET = "whsec_orgs"
    settings.WORKOS_WEBHOOK_MEMBERSHIPS_SECRET = "whsec_memberships"
    settings.WORKOS_WEBHOOK_TOLERANCE_SECONDS = 180
    settings.STRIPE_SECRET_KEY = "sk_test"
    settings.STRIPE_WEBHOOK_SECRET = "whsec_stripe"
    settings.EVENTS_POLL_PAGE_SIZE = 100
    settings.EVENTS_POLL_RANGE_START = None
    settings.SYNC_MAX_RETRIES = 5
    settings.SYNC_INITIAL_DELAY_SECONDS = 2.0
    settings.SYNC_MAX_DELAY_SECONDS = 30.0
    for key, value in PRICE_IDS.items():
        setattr(settings, key, value)
    try:
        yield
    finally:
        for k, v in original.items():
            setattr(app_config.settings, k, v)


@pytest.fixture()
def app(db_session):
    from tenantsync.main import app as fastapi_app

    def override_get_db():
        yield db_session

    fastapi_app.dependency_overrides[get_db] = override_get_db
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def internal_headers():
    return {"x-internal-token": INTERNAL_TOKEN}


@pytest.fixture()
def organization(db_session):
    org = Organization(external_id="org_acme", name="Acme", metadata_={})
    db_session.add(org)
    db_session.commit()
    db_session.refresh(org)
    return org


@pytest.fixture()
def user(db_session):
    u = User(external_id="user_ada", email="ada@example.com", first_name="Ada", last_name="Lovelace")
    db_session.add(u)
    db_session.commit()
    db_session.refresh(u)
    return u


@pytest.fixture()
def stripe_customer(db_session, organization):
    customer = StripeCustomer(organization_id=organization.id, stripe_customer_id="cus_acme")
    db_session.add(customer)
    db_session.commit()
    db_session.refresh(customer)
    return customer
