"""Kestrel — Ingestion Feed Collector.

Polls the feed-ingestion API for the per-tick snapshot of raw counters
and geo-tagged events that the fusion engine consumes:

  {
    "countries": [{"code": "UA", "data": {"protest_count": 4, ...}}],
    "hotspots":  [{"hotspot_id": "kyiv", "activity": {"news_matches": 3, ...}}],
    "events":    [{"lat": 50.4, "lon": 30.5, "type": "protest", "timestamp": "..."}],
    "tracks":    {"eastern-europe": [{"id": "AE1234", "category": "transport", ...}]}
  }

Malformed country/hotspot/track entries are dropped individually so one
bad record never discards the whole tick. Geo events are validated
later by the engine.
"""

import logging
from typing import Optional

from pydantic import ValidationError

from backend.models import CountryFeed, FeedSnapshot, HotspotFeed, MilitaryTrack
from collectors.base_collector import BaseCollector

logger = logging.getLogger("kestrel.collector")


def parse_snapshot(payload: dict) -> FeedSnapshot:
    """Validate a snapshot document entry by entry."""
    if not isinstance(payload, dict):
        raise ValueError(f"snapshot must be a JSON object, got {type(payload).__name__}")

    countries = []
    for raw in payload.get("countries") or []:
        try:
            countries.append(CountryFeed.model_validate(raw))
        except ValidationError as e:
            logger.warning("[feed] Skipping country %s: %s", raw.get("code") if isinstance(raw, dict) else raw, e)

    hotspots = []
    for raw in payload.get("hotspots") or []:
        try:
            hotspots.append(HotspotFeed.model_validate(raw))
        except ValidationError as e:
            logger.warning("[feed] Skipping hotspot %s: %s", raw.get("hotspot_id") if isinstance(raw, dict) else raw, e)

    tracks: dict[str, list[MilitaryTrack]] = {}
    for theater_id, entries in (payload.get("tracks") or {}).items():
        valid = []
        for raw in entries or []:
            try:
                valid.append(MilitaryTrack.model_validate(raw))
            except ValidationError as e:
                logger.debug("[feed] Skipping track in %s: %s", theater_id, e)
        tracks[theater_id] = valid

    events = [e for e in payload.get("events") or [] if isinstance(e, dict)]
    return FeedSnapshot(countries=countries, hotspots=hotspots, events=events, tracks=tracks)


class FeedCollector(BaseCollector):
    """Fetches one FeedSnapshot per refresh tick."""

    def __init__(self, url: str, interval: int = 60):
        super().__init__(name="feed", interval=interval)
        self.url = url

    async def collect(self) -> Optional[FeedSnapshot]:
        try:
            payload = await self.fetch_json(self.url)
        except Exception as e:
            logger.warning("[feed] Snapshot fetch failed: %s", e)
            return None
        return parse_snapshot(payload)

    def describe(self, result: FeedSnapshot) -> str:
        return (
            f"{len(result.countries)} countries, {len(result.hotspots)} hotspots, "
            f"{len(result.events)} events, {sum(len(t) for t in result.tracks.values())} tracks"
        )
