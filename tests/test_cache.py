"""Unit tests for the extraction cache."""

import pytest

from docingest.processing.models import ExtractionResult
from docingest.services.cache import ExtractionCache, content_fingerprint


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def extraction(text: str) -> ExtractionResult:
    return ExtractionResult(text=text, format="txt", unit_count=1, total_units=1)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class TestExtractionCache:
    """Capacity, recency and expiry."""

    def test_hit_and_miss(self, clock) -> None:
        cache = ExtractionCache(max_size=2, ttl_seconds=60, clock=clock)
        cache.put("a", extraction("alpha"))

        assert cache.get("a").text == "alpha"
        assert cache.get("b") is None
        assert cache.stats()["hits"] == 1
        assert cache.stats()["misses"] == 1

    def test_evicts_least_recently_used(self, clock) -> None:
        cache = ExtractionCache(max_size=2, ttl_seconds=60, clock=clock)
        cache.put("a", extraction("alpha"))
        cache.put("b", extraction("beta"))
        cache.get("a")
        cache.put("c", extraction("gamma"))

        assert cache.get("b") is None
        assert cache.get("a") is not None
        assert cache.get("c") is not None
        assert len(cache) == 2
        assert cache.stats()["evictions"] == 1

    def test_entries_expire(self, clock) -> None:
        cache = ExtractionCache(max_size=10, ttl_seconds=60, clock=clock)
        cache.put("a", extraction("alpha"))

        clock.now = 59.0
        assert cache.get("a") is not None
        clock.now = 60.0
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_purge_expired(self, clock) -> None:
        cache = ExtractionCache(max_size=10, ttl_seconds=60, clock=clock)
        cache.put("old", extraction("old"))
        clock.now = 30.0
        cache.put("new", extraction("new"))
        clock.now = 70.0

        assert cache.purge_expired() == 1
        assert cache.get("new") is not None

    def test_zero_size_disables_cache(self, clock) -> None:
        cache = ExtractionCache(max_size=0, clock=clock)
        cache.put("a", extraction("alpha"))

        assert cache.get("a") is None

    def test_clear(self, clock) -> None:
        cache = ExtractionCache(clock=clock)
        cache.put("a", extraction("alpha"))
        cache.clear()

        assert len(cache) == 0


def test_content_fingerprint() -> None:
    assert content_fingerprint(b"abc") == content_fingerprint(b"abc")
    assert content_fingerprint(b"abc") != content_fingerprint(b"abd")
    assert len(content_fingerprint(b"")) == 64
