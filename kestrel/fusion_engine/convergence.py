"""Kestrel — Geographic Convergence Detector.

Finds co-located multi-domain activity among recent geo-tagged events.

Clustering (star-shaped, single pass):
  - Walk events in input order; each unvisited event seeds a cluster
  - Every later unvisited event within `threshold_km` (haversine) of the
    SEED joins it. Distance to other members is never considered
  - Clusters spanning fewer than 3 distinct event types are discarded

Centroid = arithmetic mean of member coordinates; radius = threshold.
Score = min(100, types * 25 + min(25, (members - 1) * 2))

The pass is O(n²) in event count, which is why the engine runs it on
the offload worker.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from backend.models import ConvergenceCluster, ConvergenceResultCluster, GeoEvent
from fusion_engine.normalizer import convergence_score, haversine_km

logger = logging.getLogger("kestrel.fusion")

# Minimum distinct event types to report a convergence
GEO_CONVERGENCE_THRESHOLD = 3

GEO_CONVERGENCE_WINDOW = timedelta(hours=24)


def detect(events: list[GeoEvent], threshold_km: float) -> list[ConvergenceResultCluster]:
    """Pure clustering pass. Runs inside the worker process."""
    visited: set[int] = set()
    clusters: list[ConvergenceResultCluster] = []

    for i, seed in enumerate(events):
        if i in visited:
            continue
        visited.add(i)

        members = [seed]
        types = {seed.type: None}
        for j in range(i + 1, len(events)):
            if j in visited:
                continue
            other = events[j]
            if haversine_km(seed.lat, seed.lon, other.lat, other.lon) <= threshold_km:
                visited.add(j)
                members.append(other)
                types[other.type] = None

        if len(types) < GEO_CONVERGENCE_THRESHOLD:
            continue

        clusters.append(ConvergenceResultCluster(
            lat=sum(e.lat for e in members) / len(members),
            lon=sum(e.lon for e in members) / len(members),
            eventCount=len(members),
            typeCount=len(types),
            types=list(types),
            radius=threshold_km,
        ))

    return clusters


def recent_events(
    events: list[GeoEvent],
    now: Optional[datetime] = None,
    window: timedelta = GEO_CONVERGENCE_WINDOW,
) -> list[GeoEvent]:
    """Drop events older than the tracking window."""
    cutoff = (now or datetime.now(timezone.utc)) - window
    return [e for e in events if e.timestamp >= cutoff]


def to_clusters(raw: list[ConvergenceResultCluster]) -> list[ConvergenceCluster]:
    """Attach scores to worker clusters, highest first."""
    clusters = [
        ConvergenceCluster(
            lat=round(c.lat, 4),
            lon=round(c.lon, 4),
            event_count=c.eventCount,
            type_count=c.typeCount,
            types=c.types,
            radius=c.radius,
            score=convergence_score(c.typeCount, c.eventCount),
        )
        for c in raw
    ]
    clusters.sort(key=lambda c: c.score, reverse=True)
    return clusters


def cluster_subject(cluster: ConvergenceCluster) -> str:
    """Stable subject id for a cluster: its centroid rounded to 0.1°."""
    return f"{cluster.lat:.1f},{cluster.lon:.1f}"


def cluster_confidence(cluster: ConvergenceCluster) -> float:
    return min(0.95, 0.5 + 0.1 * cluster.type_count)


class GeoConvergenceDetector:
    """Main-context wrapper: windowing, scoring and logging around `detect`."""

    def __init__(self, threshold_km: float = 100.0, window: timedelta = GEO_CONVERGENCE_WINDOW):
        self.threshold_km = threshold_km
        self.window = window
        self.clusters: list[ConvergenceCluster] = []

    def prepare(self, events: list[GeoEvent], now: Optional[datetime] = None) -> list[GeoEvent]:
        return recent_events(events, now, self.window)

    def merge(self, raw: list[ConvergenceResultCluster]) -> list[ConvergenceCluster]:
        self.clusters = to_clusters(raw)
        logger.info(
            "[convergence] Found %d convergence clusters (%d+ event types)",
            len(self.clusters), GEO_CONVERGENCE_THRESHOLD,
        )
        return self.clusters

    def run(self, events: list[GeoEvent], now: Optional[datetime] = None) -> list[ConvergenceCluster]:
        """Inline detection on the calling context."""
        return self.merge(detect(self.prepare(events, now), self.threshold_km))
