import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure project root on sys.path so 'postback_relay' resolves without an install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from postback_relay.main import app  # type: ignore
from postback_relay.database import Base  # type: ignore
from postback_relay.api import deps  # type: ignore
"""Pytest fixtures and fakes.

The production app builds its services in the lifespan handler. Tests bypass
lifespan and put a registry built from fakes on ``app.state.services``.
"""
from postback_relay.exceptions import TransportError
from postback_relay.jobs.audit_scheduler import AuditScheduler
from postback_relay.models.db import Subscriber
from postback_relay.models.db.enums import SubscriberStatus
from postback_relay.models.schemas.attribution import ConversionRecord, TrafficSource
from postback_relay.services.alerting import OperatorNotifier
from postback_relay.services.channel_classifier import ChannelClassifier
from postback_relay.services.dedup_cache import DedupCache
from postback_relay.services.delivery_dispatcher import DeliveryDispatcher
from postback_relay.services.delivery_log import DeliveryLogStore
from postback_relay.services.fallback_resolver import FallbackResolver
from postback_relay.services.postback_pipeline import PostbackPipeline
from postback_relay.services.reconciliation_engine import ReconciliationEngine
from postback_relay.services.registry import Services
from postback_relay.utils.circuit_breaker import CircuitBreaker

SQLALCHEMY_TEST_URL = "sqlite+pysqlite:///./test_postback_relay.db"
engine = create_engine(
    SQLALCHEMY_TEST_URL,
    connect_args={"check_same_thread": False},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    try:
        os.remove("test_postback_relay.db")
    except OSError:
        pass

@pytest.fixture(autouse=True)
def _clean_tables(create_test_db):  # type: ignore[unused-argument]
    """Per-test isolation: every table starts empty."""
    yield
    session = TestingSessionLocal()
    try:
        for table in reversed(Base.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()
    finally:
        session.close()

@pytest.fixture()
def db_session():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

# Override dependency
def _override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

app.dependency_overrides[deps.get_db] = _override_get_db

# ---------- Fakes ----------

class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class RecordingSleep:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeTransport:
    """Chat transport double; chat ids in ``failing`` raise TransportError."""

    def __init__(self, failing: set[int] | None = None):
        self.failing = set(failing or ())
        self.sent: list[tuple[int, str]] = []

    async def send(self, chat_id: int, text: str) -> None:
        if chat_id in self.failing:
            raise TransportError(f"chat {chat_id} unreachable", status=403)
        self.sent.append((chat_id, text))

    async def check_health(self) -> dict:
        return {"healthy": True, "username": "fake_bot"}


class FakeAttribution:
    """Scripted tracking platform.

    ``responses[identifier]`` is a list consumed one lookup at a time; the last
    element repeats. An element that is an exception is raised.
    """

    def __init__(self, responses: dict | None = None, period_records: list | None = None):
        self.responses = dict(responses or {})
        self.period_records = list(period_records or [])
        self.period_error: Exception | None = None
        self.lookups: list[str] = []
        self.periods: list[tuple] = []

    async def lookup(self, identifier: str):
        self.lookups.append(identifier)
        script = self.responses.get(identifier)
        if not script:
            return None
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def list_for_period(self, date_from, date_to):
        self.periods.append((date_from, date_to))
        if self.period_error is not None:
            raise self.period_error
        return list(self.period_records)

    async def get_traffic_sources(self):
        if self.period_error is not None:
            raise self.period_error
        return [
            TrafficSource(id=2, name="Organic"),
            TrafficSource(id=9, name="PWA Market", state="active"),
            TrafficSource(id=12, name="Push"),
        ]

    async def check_health(self) -> dict:
        return {"healthy": True, "response_time_ms": 1.0}


class FakeRoster:
    def __init__(self, ids: list[int] | None = None, error: Exception | None = None):
        self.ids = list(ids if ids is not None else [101, 102, 103])
        self.error = error

    def list_active_subscribers(self) -> list[int]:
        if self.error is not None:
            raise self.error
        return list(self.ids)


def make_record(identifier: str = "abc12345xyz", **overrides) -> ConversionRecord:
    data = {
        "identifier": identifier,
        "sub_id_1": "buyer777x",
        "sub_id_2": "adset-1",
        "sub_id_4": "creative-9",
        "channel_id": 9,
        "channel_name": "PWA Market",
        "country_code": "BR",
        "revenue": 40.0,
        "campaign_name": "BR Casino",
        "offer_name": "Offer A",
        "status": "sale",
        "event_timestamp": NOW - timedelta(hours=2),
    }
    data.update(overrides)
    return ConversionRecord(**data)


def build_test_services(
    *,
    attribution: FakeAttribution | None = None,
    transport: FakeTransport | None = None,
    roster=None,
    clock: FakeClock | None = None,
    owner_ids: list[int] | None = None,
) -> Services:
    clock = clock or FakeClock()
    attribution = attribution or FakeAttribution()
    transport = transport or FakeTransport()
    roster = roster or FakeRoster()
    channels = ChannelClassifier()
    fallback = FallbackResolver()
    dedup = DedupCache(clock=clock)
    log_store = DeliveryLogStore(TestingSessionLocal)
    notifier = OperatorNotifier(transport, owner_ids=owner_ids if owner_ids is not None else [900])
    dispatcher = DeliveryDispatcher(transport, roster, log_store, send_delay_seconds=0)
    pipeline = PostbackPipeline(
        attribution=attribution,
        channels=channels,
        fallback=fallback,
        dedup=dedup,
        dispatcher=dispatcher,
        notifier=notifier,
        indexing_delay_seconds=30,
        sleep=RecordingSleep(),
    )
    reconciliation = ReconciliationEngine(attribution, log_store, channels, fallback, clock=clock)
    scheduler = AuditScheduler(reconciliation, notifier, clock=clock)
    return Services(
        circuit_breaker=CircuitBreaker(),
        keitaro=attribution,  # type: ignore[arg-type]
        transport=transport,  # type: ignore[arg-type]
        channels=channels,
        fallback=fallback,
        dedup=dedup,
        delivery_logs=log_store,
        roster=roster,
        notifier=notifier,
        dispatcher=dispatcher,
        pipeline=pipeline,
        reconciliation=reconciliation,
        scheduler=scheduler,
    )


@pytest.fixture()
def clock():
    return FakeClock()

@pytest.fixture()
def fake_attribution():
    return FakeAttribution()

@pytest.fixture()
def fake_transport():
    return FakeTransport()

@pytest.fixture()
def services(fake_attribution, fake_transport, clock):
    services = build_test_services(attribution=fake_attribution, transport=fake_transport, clock=clock)
    app.state.services = services  # type: ignore[attr-defined]
    yield services
    del app.state.services

@pytest.fixture()
def client(services):
    return TestClient(app)

@pytest.fixture()
def admin_token(monkeypatch):
    from postback_relay import config
    token = "test-admin-token"
    monkeypatch.setattr(config, "ADMIN_API_TOKEN", token)
    return token

# ---------- Data factory helpers ----------

@pytest.fixture()
def subscriber_factory(db_session):
    def _create(user_id: int, status: SubscriberStatus = SubscriberStatus.APPROVED, username: str | None = None):
        s = Subscriber(id=user_id, username=username or f"user{user_id}", status=status)
        db_session.add(s)
        db_session.commit()
        db_session.refresh(s)
        return s
    return _create

@pytest.fixture()
def record_factory():
    return make_record
