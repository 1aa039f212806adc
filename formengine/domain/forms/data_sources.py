"""Memoised access to external data sources.

DataSourceCache wraps an async fetcher. Responses are cached per
(source id, language); concurrent callers for the same key share one
in-flight request. Failed or empty fetches are never cached, so the next
caller retries.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from formengine.domain.forms.definition import DataSourceConfig
from formengine.domain.forms.errors import DataSourceError

logger = logging.getLogger(__name__)

DataSourceFetcher = Callable[[DataSourceConfig, str], Awaitable[Any]]

DEFAULT_MAX_ENTRIES = 64


def data_source_cache_key(config: DataSourceConfig, language: Optional[str]) -> str:
    return f"{config.cache_id}::{(language or 'EN').upper()}"


def data_source_rows(response: Any) -> List[Mapping[str, Any]]:
    """Row-shaped records of a response (a list, or a mapping with `items`)."""
    if isinstance(response, Mapping):
        response = response.get("items")
    if not isinstance(response, (list, tuple)):
        return []
    return [row for row in response if isinstance(row, Mapping)]


class DataSourceCache:
    """Async memoising cache with in-flight de-duplication and FIFO eviction.

    Args:
        fetcher: Coroutine function `(config, language) -> response`
        max_entries: Cached responses kept before the oldest is evicted
        timeout_seconds: Per-fetch timeout; None waits indefinitely
    """

    def __init__(
        self,
        fetcher: DataSourceFetcher,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        timeout_seconds: Optional[float] = None,
    ):
        self._fetcher = fetcher
        self._max_entries = max(1, max_entries)
        self._timeout = timeout_seconds
        self._entries: "OrderedDict[str, Any]" = OrderedDict()
        self._in_flight: Dict[str, "asyncio.Future[Any]"] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    async def fetch(self, config: DataSourceConfig, language: Optional[str] = None) -> Any:
        """Cached response for a data source, or None when the fetch failed.

        Args:
            config: Data-source configuration (its id selects the cache entry)
            language: Language code; part of the cache key

        Returns:
            Fetcher response, or None
        """
        key = data_source_cache_key(config, language)
        if key in self._entries:
            return self._entries[key]
        pending = self._in_flight.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        future: "asyncio.Future[Any]" = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            result = await self._fetch_once(config, (language or "EN").upper(), key)
            if result is not None:
                self._store(key, result)
            future.set_result(result)
            return result
        finally:
            self._in_flight.pop(key, None)
            if not future.done():
                future.set_result(None)

    async def fetch_rows(self, config: DataSourceConfig, language: Optional[str] = None) -> List[Mapping[str, Any]]:
        return data_source_rows(await self.fetch(config, language))

    async def _fetch_once(self, config: DataSourceConfig, language: str, key: str) -> Any:
        try:
            call = self._fetcher(config, language)
            if self._timeout is not None:
                return await asyncio.wait_for(call, timeout=self._timeout)
            return await call
        except DataSourceError as e:
            logger.warning(f"Data source fetch failed for '{key}': {e}")
        except asyncio.TimeoutError:
            logger.warning(f"Data source fetch timed out for '{key}' after {self._timeout}s")
        except Exception as e:
            logger.error(f"Unexpected data source error for '{key}': {e}", exc_info=True)
        return None

    def _store(self, key: str, result: Any) -> None:
        self._entries[key] = result
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted data source cache entry '{evicted}'")

    def invalidate(self, key: str) -> bool:
        """Drop one cached response. Returns True if it was present."""
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()
