import asyncio

import httpx
import pytest

from collectors.feed_collector import FeedCollector, parse_snapshot

PAYLOAD = {
    "countries": [
        {"code": "UA", "data": {"protest_count": 4, "conflict_count": 2}},
        {"code": "XX", "data": {"protest_count": "many"}},
        "not-a-country",
    ],
    "hotspots": [
        {"hotspot_id": "kyiv", "activity": {"news_matches": 3, "breaking": True}},
        {"activity": {}},
    ],
    "events": [{"lat": 50.4, "lon": 30.5, "type": "protest"}, "junk"],
    "tracks": {
        "eastern-europe": [
            {"id": "AE1", "category": "transport", "operator": "US", "lat": 50.1, "lon": 22.0},
            {"id": "AE2", "category": "bomber", "lat": 50.1, "lon": 22.0},
        ],
    },
}


def test_parse_snapshot_drops_bad_entries_individually():
    snap = parse_snapshot(PAYLOAD)
    assert [c.code for c in snap.countries] == ["UA"]
    assert snap.countries[0].data.conflict_count == 2
    assert [h.hotspot_id for h in snap.hotspots] == ["kyiv"]
    assert snap.hotspots[0].activity.breaking is True
    assert len(snap.events) == 1
    assert [t.id for t in snap.tracks["eastern-europe"]] == ["AE1"]


def test_parse_snapshot_empty_and_invalid():
    snap = parse_snapshot({})
    assert snap.countries == [] and snap.tracks == {}
    with pytest.raises(ValueError):
        parse_snapshot(["not", "an", "object"])


def test_collect_fetches_snapshot():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/snapshot"
        return httpx.Response(200, json=PAYLOAD)

    async def run():
        collector = FeedCollector("http://feed.test/api/snapshot")
        collector._http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        try:
            return await collector.collect()
        finally:
            await collector.stop()

    snap = asyncio.run(run())
    assert [c.code for c in snap.countries] == ["UA"]


def test_collect_returns_none_on_upstream_error():
    async def run():
        collector = FeedCollector("http://feed.test/api/snapshot")
        collector._http_client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(503))
        )
        try:
            return await collector.collect()
        finally:
            await collector.stop()

    assert asyncio.run(run()) is None
