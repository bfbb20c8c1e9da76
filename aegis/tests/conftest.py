import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from aegis.api.server import create_app
from aegis.errors import StorageFailure
from aegis.pipelines.decision_engine import DecisionEngine
from aegis.services.cache_service import ResultCache
from aegis.services.storage_service import InMemoryKeyValueStore, KeyValueStore
from aegis.services.threat_intel import ThreatIntelClient
from aegis.services.trust_learner import AdaptiveTrustLearner
from aegis.services.url_analyzer import StructuralAnalyzer


class FakeClock:
    """Controllable time source (epoch seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeReputationService:
    """
    Stand-in for the Safe Browsing endpoint.
    Counts requests and answers with the configured threat types.
    """

    def __init__(self, threats=None, delay: float = 0.0, status_code: int = 200):
        self.threats = list(threats or [])
        self.delay = delay
        self.status_code = status_code
        self.calls = 0
        self.requests = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        self.requests.append(json.loads(request.content))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"error": "unavailable"})
        body = {"matches": [{"threatType": t, "threat": {"url": "x"}} for t in self.threats]}
        return httpx.Response(200, json=body if self.threats else {})

    def client(self, **kwargs) -> ThreatIntelClient:
        return ThreatIntelClient(
            api_key=kwargs.pop("api_key", "test-key"),
            endpoint="https://reputation.test/v4/threatMatches:find",
            transport=httpx.MockTransport(self),
            **kwargs,
        )


class FailingStore(KeyValueStore):
    """Store whose backend is always down."""

    def get(self, key):
        raise StorageFailure(f"backend down reading {key}")

    def set(self, key, value):
        raise StorageFailure(f"backend down writing {key}")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryKeyValueStore()


@pytest.fixture
def reputation():
    return FakeReputationService()


@pytest.fixture
def make_engine(clock, store, reputation):
    """Factory for engines sharing the test clock, store and fake reputation service."""

    def _make(**overrides):
        engine_store = overrides.pop("store", store)
        return DecisionEngine(
            analyzer=overrides.pop("analyzer", StructuralAnalyzer(max_subdomains=3, max_hostname_length=50)),
            intel=overrides.pop("intel", reputation.client()),
            cache=overrides.pop("cache", ResultCache(ttl_seconds=3600, clock=clock)),
            learner=overrides.pop("learner", AdaptiveTrustLearner(store=engine_store, clock=clock)),
            store=engine_store,
            **overrides,
        )

    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def safe_url():
    """Well-formed HTTPS URL with nothing suspicious about it."""
    return "https://www.example.com/docs/getting-started"


@pytest.fixture
def ip_url():
    return "http://123.45.67.89/login"


@pytest.fixture
def client(engine):
    """Test client around an app wired to the in-memory engine."""
    with TestClient(create_app(engine)) as test_client:
        yield test_client
