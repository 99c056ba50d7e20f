"""Shared test fixtures for Eduverse-Engine."""

import pytest
from httpx import ASGITransport, AsyncClient

from eduverse_engine.common.backoff import BackoffPolicy
from eduverse_engine.common.config import EduverseSettings
from eduverse_engine.common.scheduling import Scheduler
from eduverse_engine.engine import EduverseEngine
from fakes import FakeIndex, FakeLedger, FakePriceFeed, FakeTokenIssuer, ManualClock, ManualScheduler

API_KEY = "test-admin-api-key"

SUBJECT = "0xabc"
COURSE = "C1"

# zero-delay retries so protocol tests never wait on the wall clock
FAST = BackoffPolicy(base_delay=0.0, max_delay=0.0, jitter=0.0, max_attempts=3)


def make_settings(**overrides) -> EduverseSettings:
    values = dict(
        api_key=API_KEY,
        course_prices={"C1": 10**16, "C2": 2 * 10**16},
        certificate_mint_price=5 * 10**15,
        certificate_add_price=10**15,
        confirmation_timeout=5.0,
        convergence_base_delay=0.0,
        convergence_max_delay=0.0,
        convergence_max_attempts=5,
        background_retry_delay=3600.0,
        index_cache_ttl=30.0,
    )
    values.update(overrides)
    return EduverseSettings(**values)


@pytest.fixture
def api_key():
    return API_KEY


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def manual_scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
async def scheduler(clock):
    sched = Scheduler(clock)
    yield sched
    await sched.shutdown()


@pytest.fixture
def ledger(clock):
    fake = FakeLedger(clock)
    fake.add_course("C1", ["s1", "s2", "s3", "s4"])
    fake.add_course("C2", ["a", "b", "c", "d"])
    return fake


@pytest.fixture
def index(ledger):
    return FakeIndex(ledger)


@pytest.fixture
def token_issuer(clock):
    return FakeTokenIssuer(clock)


@pytest.fixture
def price_feed():
    return FakePriceFeed()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
async def engine(settings, ledger, index, token_issuer, price_feed, clock):
    eng = EduverseEngine(
        settings,
        ledger_transport=ledger,
        index_transport=index,
        token_issuer=token_issuer,
        price_feed=price_feed,
        scheduler=Scheduler(clock),
        backoff=FAST,
    )
    yield eng
    await eng.teardown()


@pytest.fixture
def app(engine, monkeypatch):
    """Create a test app around the fake-backed engine."""
    monkeypatch.setenv("EDUVERSE_API_KEY", API_KEY)

    # Clear cached settings so new env vars take effect
    from eduverse_engine.common.config import get_settings
    get_settings.cache_clear()

    from eduverse_engine.app import create_app
    return create_app(engine)


@pytest.fixture
async def client(app):
    # ASGITransport doesn't run lifespan; the engine is already attached
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin_headers():
    return {"X-Eduverse-Api-Key": API_KEY}
