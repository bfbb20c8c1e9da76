"""Tests for the decision engine: ordering, caching, trust adjustment, persistence."""

import asyncio

import httpx
import pytest

from aegis.pipelines.decision_engine import (
    IN_FLIGHT_ISSUE,
    INTERNAL_ERROR_ISSUE,
    OVERRIDE_ISSUE,
    PROTECTION_DISABLED_ISSUE,
)
from aegis.schemas.analysis_schemas import (
    NavigationAction,
    Recommendation,
    Severity,
    UrlCategory,
    UserAction,
)
from aegis.services.storage_service import InMemoryKeyValueStore
from aegis.services.threat_intel import ThreatIntelClient
from aegis.services.trust_learner import STORAGE_KEY, AdaptiveTrustLearner
from aegis.services.url_analyzer import INVALID_URL_ISSUE, StructuralAnalyzer

from .conftest import FailingStore, FakeReputationService

# Medium-risk TLD with a hyphenated name: MEDIUM on structure alone
MEDIUM_URL = "https://my-shop.site/"


class ExplodingAnalyzer(StructuralAnalyzer):
    def analyze(self, url):
        raise RuntimeError("analyzer bug")


class ExplodingLearner(AdaptiveTrustLearner):
    def record_interaction(self, url, action, category=UrlCategory.UNKNOWN):
        raise RuntimeError("learner bug")


def reputation_answering(body):
    """Reputation client whose service always answers 200 with `body`."""
    return ThreatIntelClient(
        api_key="test-key",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json=body)),
    )


class TestFreshAnalysis:
    """Uncached URLs: structural analysis merged with reputation lookup."""

    @pytest.mark.asyncio
    async def test_clean_url(self, engine, reputation, safe_url):
        """Test a clean URL is allowed and counted once."""
        result = await engine.analyze_url(safe_url)

        assert result.safe is True
        assert result.severity == Severity.LOW
        assert result.issues == []
        assert result.action == NavigationAction.ALLOW
        assert result.cached is False
        assert reputation.calls == 1

        stats = engine.get_stats()
        assert stats.total_analyzed == 1
        assert stats.total_blocked == 0
        assert stats.total_warnings == 0

    @pytest.mark.asyncio
    async def test_public_ip_is_blocked(self, engine, ip_url):
        """Test a public IP literal is high severity and blocked."""
        result = await engine.analyze_url(ip_url)

        assert result.safe is False
        assert result.severity == Severity.HIGH
        assert any("IP address" in issue for issue in result.issues)
        assert result.action == NavigationAction.BLOCK
        assert engine.get_stats().total_blocked == 1

    @pytest.mark.asyncio
    async def test_medium_verdict_warns(self, engine):
        """Test a medium verdict produces a warning."""
        result = await engine.analyze_url(MEDIUM_URL)

        assert result.severity == Severity.MEDIUM
        assert result.action == NavigationAction.WARN
        assert engine.get_stats().total_warnings == 1

    @pytest.mark.asyncio
    async def test_reputation_match_forces_high(self, make_engine, safe_url):
        """Test a reputation match raises severity to high."""
        service = FakeReputationService(threats=["SOCIAL_ENGINEERING"])
        engine = make_engine(intel=service.client())

        result = await engine.analyze_url(safe_url)

        assert result.severity == Severity.HIGH
        assert result.safe is False
        assert result.threats == ["SOCIAL_ENGINEERING"]
        assert "Flagged by threat intelligence: SOCIAL_ENGINEERING" in result.issues

    @pytest.mark.asyncio
    async def test_reputation_failure_fails_open(self, make_engine, safe_url):
        """Test an unavailable reputation service leaves the URL allowed."""
        engine = make_engine(intel=FakeReputationService(threats=["MALWARE"], status_code=503).client())

        result = await engine.analyze_url(safe_url)

        assert result.safe is True
        assert result.threats == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {"matches": 5},
        {"matches": [{"threatType": 7}]},
        {"matches": ["MALWARE"]},
    ])
    async def test_malformed_reputation_response_keeps_structural_verdict(self, make_engine, ip_url, body):
        """Test a malformed reputation answer drops only the reputation signal."""
        engine = make_engine(intel=reputation_answering(body))

        result = await engine.analyze_url(ip_url)

        assert result.severity == Severity.HIGH
        assert result.safe is False
        assert result.action == NavigationAction.BLOCK
        assert result.threats == []
        assert INTERNAL_ERROR_ISSUE not in result.issues
        await engine.close()

    @pytest.mark.asyncio
    async def test_invalid_url_fails_closed(self, engine, reputation):
        """Test an unparseable URL is high severity and never looked up."""
        result = await engine.analyze_url("not a url")

        assert result.safe is False
        assert result.severity == Severity.HIGH
        assert result.issues == [INVALID_URL_ISSUE]
        assert result.recommendation is None
        assert reputation.calls == 0

    @pytest.mark.asyncio
    async def test_lookup_skipped_when_safe_browsing_off(self, engine, reputation, safe_url):
        """Test the reputation lookup honours the safe_browsing toggle."""
        await engine.update_settings({"safe_browsing": False})

        result = await engine.analyze_url(safe_url)

        assert result.safe is True
        assert reputation.calls == 0

    @pytest.mark.asyncio
    async def test_internal_error_fails_open(self, make_engine, safe_url):
        """Test an unexpected analyzer error yields a fail-open result."""
        engine = make_engine(analyzer=ExplodingAnalyzer())

        result = await engine.analyze_url(safe_url)

        assert result.safe is True
        assert result.issues == [INTERNAL_ERROR_ISSUE]
        assert engine.is_in_flight(safe_url) is False


class TestShortCircuits:
    """Paths that return before a fresh analysis."""

    @pytest.mark.asyncio
    async def test_protection_disabled(self, engine, reputation, ip_url):
        """Test disabled protection allows everything without counting."""
        await engine.update_settings({"enabled": False})

        result = await engine.analyze_url(ip_url)

        assert result.safe is True
        assert result.issues == [PROTECTION_DISABLED_ISSUE]
        assert reputation.calls == 0
        assert engine.get_stats().total_analyzed == 0
        assert engine.cache.size == 0

    @pytest.mark.asyncio
    async def test_session_override(self, engine, reputation, ip_url):
        """Test an overridden URL is allowed without a lookup."""
        await engine.user_override(ip_url)

        result = await engine.analyze_url(ip_url)

        assert result.safe is True
        assert result.overridden is True
        assert result.issues == [OVERRIDE_ISSUE]
        assert reputation.calls == 0
        assert engine.get_stats().session_overrides == 1

    @pytest.mark.asyncio
    async def test_concurrent_requests_are_deduplicated(self, make_engine, safe_url):
        """Test concurrent requests for one URL make a single lookup."""
        service = FakeReputationService(delay=0.2)
        engine = make_engine(intel=service.client())

        first, second = await asyncio.gather(
            engine.analyze_url(safe_url),
            engine.analyze_url(safe_url),
        )

        assert service.calls == 1
        assert [first.issues, second.issues].count([IN_FLIGHT_ISSUE]) == 1
        assert first.safe and second.safe
        assert engine.is_in_flight(safe_url) is False
        assert engine.get_stats().total_analyzed == 1


class TestCache:
    """Reuse and re-evaluation of cached verdicts."""

    @pytest.mark.asyncio
    async def test_safe_verdict_is_reused(self, engine, reputation, safe_url):
        """Test a cached safe verdict is returned without a new lookup."""
        await engine.analyze_url(safe_url)
        result = await engine.analyze_url(safe_url)

        assert result.cached is True
        assert result.safe is True
        assert reputation.calls == 1
        assert engine.get_stats().total_analyzed == 1

    @pytest.mark.asyncio
    async def test_unsafe_verdict_is_re_evaluated(self, make_engine, safe_url):
        """Test a cached unsafe verdict without trust is analyzed again."""
        service = FakeReputationService(threats=["MALWARE"])
        engine = make_engine(intel=service.client())

        await engine.analyze_url(safe_url)
        result = await engine.analyze_url(safe_url)

        assert result.cached is False
        assert result.safe is False
        assert service.calls == 2

    @pytest.mark.asyncio
    async def test_expired_entry_is_re_analyzed(self, engine, reputation, clock, safe_url):
        """Test an entry past its TTL is analyzed again."""
        await engine.analyze_url(safe_url)
        clock.advance(3600)

        result = await engine.analyze_url(safe_url)

        assert result.cached is False
        assert reputation.calls == 2

    @pytest.mark.asyncio
    async def test_confident_trust_reuses_unsafe_cache_entry(self, make_engine):
        """Test confident TRUST reuses a cached unsafe verdict."""
        service = FakeReputationService()
        engine = make_engine(intel=service.client())
        await engine.analyze_url(MEDIUM_URL)

        for _ in range(40):
            engine.learner.record_interaction(MEDIUM_URL, UserAction.PROCEED, UrlCategory.GENERAL)

        result = await engine.analyze_url(MEDIUM_URL)

        assert result.cached is True
        assert result.recommendation.recommendation == Recommendation.TRUST
        assert service.calls == 1

    @pytest.mark.asyncio
    async def test_weak_trust_still_reuses_unsafe_cache_entry(self, make_engine):
        """Test low-confidence TRUST also reuses a cached unsafe verdict."""
        service = FakeReputationService()
        engine = make_engine(intel=service.client())
        first = await engine.analyze_url(MEDIUM_URL)
        assert first.safe is False

        engine.learner.record_interaction(MEDIUM_URL, UserAction.PROCEED, UrlCategory.GENERAL)

        result = await engine.analyze_url(MEDIUM_URL)

        assert result.cached is True
        assert result.safe is False
        assert result.recommendation.recommendation == Recommendation.TRUST
        assert result.recommendation.confidence <= 0.7
        assert service.calls == 1


class TestLearnedTrust:
    """Learner recommendations applied to fresh verdicts."""

    @pytest.mark.asyncio
    async def test_confident_trust_overrides_structure(self, engine):
        """Test confident TRUST marks a medium URL safe."""
        # 40 interactions: confidence log10(41) / 2 > 0.8
        for _ in range(40):
            engine.learner.record_interaction(MEDIUM_URL, UserAction.PROCEED, UrlCategory.GENERAL)

        result = await engine.analyze_url(MEDIUM_URL)

        assert result.severity == Severity.MEDIUM
        assert result.safe is True
        assert result.adjusted_by_safety is True
        assert result.action == NavigationAction.ALLOW
        assert result.recommendation.confidence > 0.8

    @pytest.mark.asyncio
    async def test_confident_distrust_overrides_structure(self, engine, safe_url):
        """Test confident UNSAFE marks a clean URL unsafe."""
        for _ in range(40):
            engine.learner.record_interaction(safe_url, UserAction.BLOCK, UrlCategory.GENERAL)

        result = await engine.analyze_url(safe_url)

        assert result.severity == Severity.LOW
        assert result.safe is False
        assert result.adjusted_by_safety is True
        assert result.action == NavigationAction.WARN

    @pytest.mark.asyncio
    async def test_low_confidence_is_advisory(self, engine, safe_url):
        """Test a low-confidence recommendation does not change `safe`."""
        await engine.user_block(safe_url)

        result = await engine.analyze_url(safe_url)

        assert result.recommendation.recommendation == Recommendation.UNSAFE
        assert result.recommendation.confidence < 0.8
        assert result.safe is True
        assert result.adjusted_by_safety is False

    @pytest.mark.asyncio
    async def test_user_decisions_feed_the_learner(self, engine, ip_url):
        """Test override and block actions are recorded per domain."""
        await engine.user_block(ip_url)
        await engine.user_block(ip_url)
        await engine.user_override(ip_url)

        stats = engine.learner.domain_stats("123.45.67.89")
        assert stats.unsafe_count == 2
        assert stats.safe_count == 1
        assert stats.total == 3


class TestHistory:
    """Bounded, newest-first history."""

    @pytest.mark.asyncio
    async def test_history_is_bounded_newest_first(self, make_engine):
        """Test the 101st entry evicts the oldest."""
        engine = make_engine(history_limit=100)

        for i in range(101):
            await engine.analyze_url(f"https://www.example.com/page/{i}")

        history = engine.get_history()
        assert len(history) == 100
        assert history[0].url == "https://www.example.com/page/100"
        assert history[-1].url == "https://www.example.com/page/1"

    @pytest.mark.asyncio
    async def test_history_disabled(self, engine, safe_url):
        """Test keep_history off records nothing but still counts."""
        await engine.update_settings({"keep_history": False})
        await engine.analyze_url(safe_url)

        assert engine.get_history() == []
        assert engine.get_stats().total_analyzed == 1


class TestPersistence:
    """State reload and storage failure handling."""

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, make_engine, store, ip_url, safe_url):
        """Test settings, stats, history and learning reload; overrides do not."""
        first = make_engine()
        await first.analyze_url(safe_url)
        await first.update_settings({"show_warnings": False})
        await first.user_override(ip_url)

        second = make_engine()
        await second.start()
        try:
            assert second.get_stats().total_analyzed == 1
            assert second.get_stats().session_overrides == 1
            assert second.protection.show_warnings is False
            assert [r.url for r in second.get_history()] == [safe_url]
            assert second.learner.domain_stats("123.45.67.89").total == 1
            # Session overrides are not persisted
            assert ip_url not in second.overrides
        finally:
            await second.close()
            await first.close()

    @pytest.mark.asyncio
    async def test_storage_failure_is_not_fatal(self, make_engine, safe_url, ip_url):
        """Test every command works on in-memory state when storage is down."""
        engine = make_engine(store=FailingStore())
        await engine.start()
        try:
            result = await engine.analyze_url(safe_url)
            ack = await engine.user_override(ip_url)
            await engine.update_settings({"block_high_risk": False})

            assert result.safe is True
            assert ack.success is True
            assert engine.get_stats().total_analyzed == 1
            assert engine.protection.block_high_risk is False
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_corrupt_learning_data_resets(self, make_engine, safe_url):
        """Test corrupt stored learning data is discarded at start."""
        store = InMemoryKeyValueStore({STORAGE_KEY: {"domain_trust": "garbage"}})
        engine = make_engine(store=store)
        await engine.start()
        try:
            result = await engine.analyze_url(safe_url)
            assert result.safe is True
            assert engine.learner.snapshot()["domain_trust"] == {}
        finally:
            await engine.close()


class TestDispatch:
    """Message-style command dispatch."""

    @pytest.mark.asyncio
    async def test_analyze_command(self, engine, safe_url):
        """Test ANALYZE_URL returns a serialized result."""
        response = await engine.dispatch({"type": "ANALYZE_URL", "url": safe_url})
        assert response["safe"] is True
        assert response["severity"] == "low"
        assert response["url"] == safe_url

    @pytest.mark.asyncio
    async def test_override_and_block_commands(self, engine, ip_url):
        """Test USER_OVERRIDE and USER_BLOCK acknowledge and learn."""
        assert (await engine.dispatch({"type": "USER_OVERRIDE", "url": ip_url}))["success"] is True
        assert (await engine.dispatch({"type": "USER_BLOCK", "url": ip_url}))["success"] is True
        assert engine.learner.domain_stats("123.45.67.89").total == 2

    @pytest.mark.asyncio
    async def test_stats_and_history_commands(self, engine, safe_url):
        """Test GET_STATS and GET_HISTORY reflect analyzed URLs."""
        await engine.dispatch({"type": "ANALYZE_URL", "url": safe_url})

        stats = await engine.dispatch({"type": "GET_STATS"})
        history = await engine.dispatch({"type": "GET_HISTORY"})

        assert stats["total_analyzed"] == 1
        assert [entry["url"] for entry in history["history"]] == [safe_url]

    @pytest.mark.asyncio
    async def test_update_settings_command(self, engine):
        """Test UPDATE_SETTINGS merges a partial update."""
        response = await engine.dispatch({"type": "UPDATE_SETTINGS", "settings": {"show_warnings": False}})

        assert response["success"] is True
        assert response["settings"]["show_warnings"] is False
        assert response["settings"]["enabled"] is True

    @pytest.mark.asyncio
    async def test_malformed_settings_are_rejected(self, engine):
        """Test a badly typed setting is rejected."""
        response = await engine.dispatch({"type": "UPDATE_SETTINGS", "settings": {"enabled": "sometimes"}})

        assert "error" in response
        assert engine.protection.enabled is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", ["abc", ["enabled"], 42])
    async def test_non_mapping_settings_are_rejected(self, engine, value):
        """Test a settings payload that is not an object is rejected."""
        response = await engine.dispatch({"type": "UPDATE_SETTINGS", "settings": value})

        assert "error" in response
        assert engine.protection.enabled is True

    @pytest.mark.asyncio
    async def test_unexpected_failure_becomes_error(self, make_engine, clock, ip_url):
        """Test an unexpected fault is returned as an error, not raised."""
        engine = make_engine(learner=ExplodingLearner(clock=clock))

        response = await engine.dispatch({"type": "USER_BLOCK", "url": ip_url})

        assert "error" in response

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message", [
        {"type": "ANALYZE_URL"},
        {"type": "USER_BLOCK", "url": "   "},
    ])
    async def test_missing_url(self, engine, message):
        """Test URL commands without a URL are rejected."""
        assert await engine.dispatch(message) == {"error": "Missing url"}

    @pytest.mark.asyncio
    async def test_unknown_command(self, engine):
        """Test an unknown command type is rejected."""
        assert await engine.dispatch({"type": "SELF_DESTRUCT"}) == {"error": "Unknown message type"}
