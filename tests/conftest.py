import pytest

from fakes import SECRET, Clock, FakeCredentials, FakeEngine

from livebridge.auth import TokenVerifier
from livebridge.registry import SessionRegistry


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def credentials():
    return FakeCredentials(cookies=[{"name": "sid", "value": "abc", "domain": ".example.com", "path": "/"}])


@pytest.fixture
def registry(engine, credentials, clock):
    return SessionRegistry(
        engine,
        credentials,
        idle_ttl=1800,
        max_sessions=10,
        landing_url="https://remote.test/home",
        clock=clock,
    )


@pytest.fixture
def verifier():
    return TokenVerifier(secret=SECRET)
