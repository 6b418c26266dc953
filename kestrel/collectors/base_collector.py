"""Kestrel — Abstract Base Collector."""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

logger = logging.getLogger("kestrel.collector")


class BaseCollector(ABC):
    """Base class for polling collaborators that feed the fusion engine."""

    def __init__(self, name: str, interval: int = 60, timeout: float = 30.0):
        self.name = name
        self.interval = interval
        self.timeout = timeout
        self._running = False
        self._http_client: Optional[httpx.AsyncClient] = None
        self._last_fetch: Optional[datetime] = None

    async def start(self):
        """Start the collector loop. Yields one result (or None) per tick."""
        self._running = True
        self._http_client = httpx.AsyncClient(timeout=self.timeout)
        logger.info("[%s] Collector started (interval=%ds)", self.name, self.interval)

        while self._running:
            try:
                result = await self.collect()
                self._last_fetch = datetime.now(timezone.utc)
                if result:
                    logger.info("[%s] Collected %s", self.name, self.describe(result))
                else:
                    logger.debug("[%s] Nothing new", self.name)
                yield result
            except Exception as e:
                logger.error("[%s] Collection error: %s", self.name, e)
                yield None

            await asyncio.sleep(self.interval)

    async def stop(self):
        self._running = False
        if self._http_client:
            await self._http_client.aclose()
        logger.info("[%s] Collector stopped", self.name)

    @property
    def last_fetch(self) -> Optional[datetime]:
        return self._last_fetch

    @abstractmethod
    async def collect(self) -> Any:
        """Fetch one update from the upstream source."""
        ...

    def describe(self, result: Any) -> str:
        return type(result).__name__

    async def fetch_json(self, url: str, params: dict = None) -> Any:
        """Helper to fetch JSON from a URL."""
        if not self._http_client:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        resp = await self._http_client.get(url, params=params)
        resp.raise_for_status()
        return resp.json()
