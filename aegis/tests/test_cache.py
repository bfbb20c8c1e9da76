"""Tests for the TTL result cache."""

import asyncio

import pytest

from aegis.schemas.analysis_schemas import AnalysisResult, Severity
from aegis.services.cache_service import ResultCache


class TestResultCache:
    """Tests for the TTL result cache."""

    @pytest.fixture
    def cache(self, clock):
        return ResultCache(ttl_seconds=100, clock=clock)

    def test_round_trip_before_expiry(self, cache, clock):
        """Test a stored result is returned before expiry."""
        result = AnalysisResult(url="https://example.com/", severity=Severity.MEDIUM, safe=False)
        cache.set(result.url, result)
        clock.advance(99)
        assert cache.get(result.url) == result

    def test_miss_after_expiry(self, cache, clock):
        """Test an expired entry misses and is evicted."""
        cache.set("https://example.com/", AnalysisResult(url="https://example.com/"))
        clock.advance(100)
        assert cache.get("https://example.com/") is None
        assert cache.size == 0  # evicted on read

    def test_unknown_key_misses(self, cache):
        """Test an unknown URL misses."""
        assert cache.get("https://nowhere.example.com/") is None

    def test_keys_are_not_normalized(self, cache):
        """Test URLs differing only by query are cached apart."""
        cache.set("https://example.com/?utm_source=a", AnalysisResult(url="https://example.com/?utm_source=a"))
        assert cache.get("https://example.com/?utm_source=b") is None
        assert cache.get("https://example.com/") is None
        assert cache.get("https://example.com/?utm_source=a") is not None

    def test_last_write_wins(self, cache):
        """Test a second write replaces the first."""
        url = "https://example.com/"
        cache.set(url, AnalysisResult(url=url, severity=Severity.LOW))
        cache.set(url, AnalysisResult(url=url, severity=Severity.HIGH, safe=False))
        assert cache.get(url).severity == Severity.HIGH

    def test_sweep_removes_only_expired(self, cache, clock):
        """Test the sweep keeps fresh entries."""
        cache.set("https://old.example.com/", AnalysisResult(url="https://old.example.com/"))
        clock.advance(60)
        cache.set("https://new.example.com/", AnalysisResult(url="https://new.example.com/"))
        clock.advance(50)

        assert cache.sweep() == 1
        assert cache.size == 1
        assert cache.get("https://new.example.com/") is not None

    def test_clear(self, cache):
        """Test clear empties the cache."""
        cache.set("https://example.com/", AnalysisResult(url="https://example.com/"))
        cache.clear()
        assert cache.size == 0

    @pytest.mark.asyncio
    async def test_background_sweeper(self, cache, clock):
        """Test the background task reclaims expired entries."""
        cache.set("https://example.com/", AnalysisResult(url="https://example.com/"))
        clock.advance(200)

        cache.start_sweeper(interval=0.01)
        await asyncio.sleep(0.05)
        await cache.stop_sweeper()

        assert cache.size == 0
