"""Kestrel — Fusion Engine.

Runs one refresh cycle per ingestion snapshot:

  1. CII batch recompute          (offloaded)  ┐ concurrently
  2. Geo-convergence detection    (offloaded)  ┘
  3. Hotspot escalation           (reads CII + convergence output)
  4. Military surge / foreign presence
  5. Publish emitted signals

Each stage is guarded: a failing stage is logged and the others still
run. A failed or skipped offload keeps the previous scores/clusters.
History is only written here, on the event loop, after offloaded work
has returned.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from backend.config import Settings, load_catalog_file
from backend.models import (
    CIIScore, ConvergenceCluster, EscalationInput, EscalationSample, FeedSnapshot,
    ForeignPresence, Hotspot, ScoringTier, Signal, SignalType, SurgeResult,
)
from fusion_engine.catalog import Catalog
from fusion_engine.convergence import GeoConvergenceDetector, cluster_confidence, cluster_subject
from fusion_engine.country_instability import InstabilityScorer
from fusion_engine.history import HistoryStore
from fusion_engine.hotspot_escalation import EscalationScorer, escalation_confidence
from fusion_engine.military_surge import SurgeDetector, count_tracks
from fusion_engine.normalizer import haversine_km, normalize_geo_events
from fusion_engine.offload import ComputeOffloadBridge
from fusion_engine.signals import SignalEmitter

logger = logging.getLogger("kestrel.fusion")

# Convergence clusters closer than this feed a hotspot's geo sub-score
HOTSPOT_GEO_RADIUS_KM = 150.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FusionEngine:
    """Owns every scorer, the offload bridge and the signal emitter."""

    def __init__(
        self,
        settings: Settings,
        catalog: Optional[Catalog] = None,
        bridge: Optional[ComputeOffloadBridge] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.settings = settings
        self._clock = clock
        self.catalog = catalog or Catalog(load_catalog_file(settings.catalog_path))
        self.tier = ScoringTier(settings.cii_tier)

        self.cii = InstabilityScorer(
            self.catalog,
            history=HistoryStore(timedelta(hours=settings.cii_history_hours), clock=clock, name="cii"),
            clock=clock,
            warmup=timedelta(minutes=settings.cii_warmup_minutes),
            warmup_baseline_weight=settings.cii_warmup_baseline_weight,
            warmup_deadband=settings.cii_warmup_deadband,
            tier=self.tier,
        )
        self.escalation = EscalationScorer(clock=clock)
        self.convergence = GeoConvergenceDetector(
            settings.geo_convergence_threshold_km,
            timedelta(hours=settings.geo_convergence_window_hours),
        )
        self.surge = SurgeDetector(clock=clock)
        self.emitter = SignalEmitter(
            cooldowns={
                SignalType(name): timedelta(seconds=seconds)
                for name, seconds in settings.signal_cooldowns.items()
            },
            default_cooldown=timedelta(seconds=settings.signal_default_cooldown),
            history_size=settings.signal_history_size,
            clock=clock,
        )
        self.bridge = bridge or ComputeOffloadBridge(
            timeout=settings.offload_timeout_seconds,
            retries=settings.offload_retries,
            ready_timeout=settings.offload_ready_timeout_seconds,
            inline=not settings.offload_enabled,
        )

        self.surges: list[SurgeResult] = []
        self.foreign_presence: list[ForeignPresence] = []
        self.last_cycle_at: Optional[datetime] = None

    async def start(self) -> None:
        await self.bridge.start()

    async def stop(self) -> None:
        await self.bridge.stop()

    # ── Refresh cycle ─────────────────────────────────

    async def refresh(self, snapshot: FeedSnapshot) -> list[Signal]:
        """Score one snapshot end to end and publish whatever signals qualify."""
        signals: list[Signal] = []

        _, convergence = await asyncio.gather(
            self._guarded("cii", self.refresh_cii(snapshot)),
            self._guarded("convergence", self.refresh_convergence(snapshot)),
        )
        if convergence:
            signals.extend(convergence)

        try:
            signals.extend(self.refresh_escalation(snapshot))
        except Exception as e:
            logger.error("[engine] Escalation stage failed: %s", e)

        try:
            signals.extend(self.refresh_surge(snapshot))
        except Exception as e:
            logger.error("[engine] Surge stage failed: %s", e)

        await self.emitter.publish(signals)
        self.last_cycle_at = self._clock()
        logger.info(
            "[engine] Cycle complete: %d countries, %d clusters, %d signals",
            len(self.cii.countries), len(self.convergence.clusters), len(signals),
        )
        return signals

    async def _guarded(self, stage: str, coro):
        try:
            return await coro
        except Exception as e:
            logger.error("[engine] %s stage failed: %s", stage, e)
            return None

    async def refresh_cii(self, snapshot: FeedSnapshot) -> list[CIIScore]:
        if not snapshot.countries:
            return []
        batch = [self.cii.build_request(feed.code, feed.data, feed.name) for feed in snapshot.countries]
        result = await self.bridge.calculate_cii(batch, self.tier, self.settings.cii_warmup_baseline_weight)
        if result is None:
            logger.warning("[engine] CII batch unavailable, keeping previous scores")
            return []
        return self.cii.apply_batch(result, self.tier)

    async def refresh_convergence(self, snapshot: FeedSnapshot) -> list[Signal]:
        events = self.convergence.prepare(normalize_geo_events(snapshot.events), self._clock())
        result = await self.bridge.detect_convergence(events, self.convergence.threshold_km)
        if result is None:
            logger.warning("[engine] Convergence pass unavailable, keeping previous clusters")
            return []

        signals = []
        for cluster in self.convergence.merge(result.clusters):
            signal = self.emitter.propose(
                SignalType.GEO_CONVERGENCE,
                cluster_subject(cluster),
                cluster.score,
                cluster_confidence(cluster),
                title=f"Geographic convergence: {cluster.type_count} event types",
                description=(
                    f"{cluster.event_count} events ({', '.join(cluster.types)}) within "
                    f"{cluster.radius:.0f} km of {cluster.lat:.2f}, {cluster.lon:.2f}"
                ),
                metadata=cluster.model_dump(mode="json"),
            )
            if signal:
                signals.append(signal)
        return signals

    def refresh_escalation(self, snapshot: FeedSnapshot) -> list[Signal]:
        feeds = {feed.hotspot_id: feed.activity for feed in snapshot.hotspots}
        signals = []
        for hotspot in self.catalog.hotspots.values():
            activity = self._escalation_input(hotspot, feeds.get(hotspot.id))
            sample, reason = self.escalation.score(hotspot, activity)
            if reason is None:
                continue
            signal = self.emitter.propose(
                SignalType.HOTSPOT_ESCALATION,
                hotspot.id,
                sample.alert_score,
                escalation_confidence(activity, sample.components),
                title=f"{hotspot.name} escalation ({reason.replace('_', ' ')})",
                description=(
                    f"Escalation score {sample.alert_score:.1f}/5, trend {sample.trend.value}"
                ),
                metadata={
                    "reason": reason,
                    "combined": sample.combined,
                    "slope": sample.slope,
                    "components": sample.components.model_dump(),
                },
            )
            if signal:
                hotspot.last_signal_at = signal.timestamp
                signals.append(signal)
        return signals

    def _escalation_input(self, hotspot: Hotspot, activity: Optional[EscalationInput]) -> EscalationInput:
        activity = activity.model_copy() if activity else EscalationInput()
        if activity.cii_value is None:
            activity.cii_value = self.cii.current_value(hotspot.country_code)
        if activity.geo_alert_types == 0 and activity.geo_alert_score == 0:
            nearby = [
                c for c in self.convergence.clusters
                if haversine_km(hotspot.lat, hotspot.lon, c.lat, c.lon) <= HOTSPOT_GEO_RADIUS_KM
            ]
            if nearby:
                activity.geo_alert_types = len({t for c in nearby for t in c.types})
                activity.geo_alert_score = max(c.score for c in nearby)
        return activity

    def refresh_surge(self, snapshot: FeedSnapshot) -> list[Signal]:
        signals = []
        surges: list[SurgeResult] = []
        foreign: list[ForeignPresence] = []

        for theater in self.catalog.theaters.values():
            if theater.id not in snapshot.tracks:
                continue
            tracks = snapshot.tracks[theater.id]
            results = self.surge.evaluate(
                theater, count_tracks(tracks), tracks, self.cii.current_value(theater.country_code)
            )
            surges.extend(results)
            for surge in results:
                signal = self.emitter.propose(
                    SignalType.MILITARY_SURGE,
                    f"{theater.id}:{surge.category}",
                    surge.multiple,
                    surge.confidence,
                    title=f"{theater.name}: {surge.category} surge",
                    description=(
                        f"{surge.current} {surge.category} vs baseline {surge.baseline:.1f} "
                        f"(x{surge.multiple:.1f}), posture {surge.posture}"
                    ),
                    metadata=surge.model_dump(mode="json"),
                )
                if signal:
                    signals.append(signal)

            for presence in self.surge.detect_foreign_presence(theater, tracks):
                foreign.append(presence)
                signal = self.emitter.propose(
                    SignalType.MILITARY_SURGE,
                    f"{theater.id}:foreign:{presence.operator}",
                    float(presence.count),
                    presence.confidence,
                    title=f"{theater.name}: foreign military presence ({presence.operator})",
                    description=f"{presence.count} {presence.operator} assets in theater",
                    metadata=presence.model_dump(mode="json"),
                )
                if signal:
                    signals.append(signal)

        self.surges = surges
        self.foreign_presence = foreign
        return signals

    # ── Read side ─────────────────────────────────────

    def escalation_snapshot(self) -> list[EscalationSample]:
        samples = [
            s for s in (self.escalation.latest(h) for h in self.catalog.hotspots) if s is not None
        ]
        samples.sort(key=lambda s: s.combined, reverse=True)
        return samples

    def clusters(self) -> list[ConvergenceCluster]:
        return list(self.convergence.clusters)
