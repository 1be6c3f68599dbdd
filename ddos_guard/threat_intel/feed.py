"""
Threat feed providers — where the cache gets its reputation data from.

HttpThreatFeed calls a REST feed with requests. The blocking call runs in a
worker thread so the event loop never waits on the network. Every failure
mode (transport, HTTP status, JSON, schema) is reported as
FeedUnavailableError; the cache decides what to do with it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import requests
from pydantic import ValidationError

from ddos_guard.errors import FeedUnavailableError
from ddos_guard.models.threat import ThreatFeedResponse

logger = logging.getLogger(__name__)


class ThreatFeedProvider(Protocol):
    async def fetch_latest(self) -> ThreatFeedResponse:
        """Retrieve the current batch of threat records.

        Raises:
            FeedUnavailableError: If the batch cannot be retrieved or parsed.
        """
        ...


class HttpThreatFeed:
    """Threat feed served over HTTPS as JSON.

    Expected body: {"threats": [ThreatRecord...], "last_updated": ..., "total_count": N}
    """

    def __init__(self, base_url: str, api_key: str, timeout_seconds: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds

    @property
    def threats_url(self) -> str:
        return f"{self.base_url}/threats"

    def _get(self) -> dict[str, Any]:
        response = requests.get(
            self.threats_url,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Accept": "application/json",
            },
            timeout=self.timeout_seconds,
        )
        response.raise_for_status()
        return response.json()

    async def fetch_latest(self) -> ThreatFeedResponse:
        try:
            body = await asyncio.to_thread(self._get)
        except requests.RequestException as e:
            raise FeedUnavailableError(f"Threat feed request to {self.threats_url} failed: {e}") from e
        except ValueError as e:
            raise FeedUnavailableError(f"Threat feed returned invalid JSON: {e}") from e

        try:
            feed = ThreatFeedResponse.model_validate(body)
        except ValidationError as e:
            raise FeedUnavailableError(f"Threat feed payload doesn't match schema: {e}") from e

        if not feed.total_count:
            feed = feed.model_copy(update={"total_count": len(feed.threats)})

        logger.debug(
            "threat_feed.fetched",
            extra={"url": self.threats_url, "threats": len(feed.threats)},
        )
        return feed
