"""Tests for the memoising data-source cache."""

import asyncio

import pytest

from formengine.domain.forms.data_sources import DataSourceCache, data_source_cache_key, data_source_rows
from formengine.domain.forms.definition import DataSourceConfig
from formengine.domain.forms.errors import DataSourceError

RECIPES = DataSourceConfig(id="recipes")
PANTRY = DataSourceConfig(id="pantry")


class RecordingFetcher:
    """Async fetcher that records calls and replays scripted outcomes."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes) or [[{"name": "Stew"}]]
        self.calls = []

    async def __call__(self, config, language):
        self.calls.append((config.id, language))
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


# =========================================================================
# Helpers
# =========================================================================


class TestHelpers:
    def test_cache_key(self):
        assert data_source_cache_key(RECIPES, "fr") == "recipes::FR"
        assert data_source_cache_key(DataSourceConfig(), None) == "default::EN"

    def test_rows_from_list_or_items(self):
        assert data_source_rows([{"a": 1}, "skip"]) == [{"a": 1}]
        assert data_source_rows({"items": [{"b": 2}]}) == [{"b": 2}]
        assert data_source_rows(None) == []


# =========================================================================
# Cache behaviour
# =========================================================================


class TestDataSourceCache:
    """Tests for memoisation, de-duplication and eviction."""

    @pytest.mark.asyncio
    async def test_response_is_memoised_per_language(self):
        fetcher = RecordingFetcher()
        cache = DataSourceCache(fetcher)
        first = await cache.fetch(RECIPES, "en")
        second = await cache.fetch(RECIPES, "EN")
        await cache.fetch(RECIPES, "fr")
        assert first is second
        assert fetcher.calls == [("recipes", "EN"), ("recipes", "FR")]

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_request(self):
        release = asyncio.Event()
        calls = []

        async def slow_fetcher(config, language):
            calls.append(config.id)
            await release.wait()
            return [{"name": "Pie"}]

        cache = DataSourceCache(slow_fetcher)
        tasks = [asyncio.ensure_future(cache.fetch(RECIPES)) for _ in range(3)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks)
        assert calls == ["recipes"]
        assert all(r == [{"name": "Pie"}] for r in results)

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self):
        fetcher = RecordingFetcher(DataSourceError("recipes", "offline"), [{"name": "Stew"}])
        cache = DataSourceCache(fetcher)
        assert await cache.fetch(RECIPES) is None
        assert len(cache) == 0
        assert await cache.fetch(RECIPES) == [{"name": "Stew"}]
        assert len(fetcher.calls) == 2

    @pytest.mark.asyncio
    async def test_unexpected_errors_return_none(self):
        cache = DataSourceCache(RecordingFetcher(RuntimeError("boom")))
        assert await cache.fetch(RECIPES) is None

    @pytest.mark.asyncio
    async def test_timeout_returns_none(self):
        async def hanging_fetcher(config, language):
            await asyncio.sleep(5)

        cache = DataSourceCache(hanging_fetcher, timeout_seconds=0.01)
        assert await cache.fetch(RECIPES) is None

    @pytest.mark.asyncio
    async def test_oldest_entry_is_evicted(self):
        cache = DataSourceCache(RecordingFetcher(), max_entries=1)
        await cache.fetch(RECIPES)
        await cache.fetch(PANTRY)
        assert len(cache) == 1
        assert "recipes::EN" not in cache
        assert "pantry::EN" in cache

    @pytest.mark.asyncio
    async def test_invalidate_and_fetch_rows(self):
        cache = DataSourceCache(RecordingFetcher({"items": [{"name": "Stew"}]}))
        assert await cache.fetch_rows(RECIPES) == [{"name": "Stew"}]
        assert cache.invalidate("recipes::EN")
        assert not cache.invalidate("recipes::EN")
