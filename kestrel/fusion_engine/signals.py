"""Kestrel — Signal Emitter.

The only component that produces externally visible alerts. Scorers
propose signals; the emitter applies per (type, subject) cooldowns and
dedupe keys, attaches the static context for the signal type and fans
emitted signals out to subscribers.

State per (type, subject): Idle → Emitted(until cooldown elapses) → Idle
"""

import logging
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from backend.models import Signal, SignalContext, SignalType
from fusion_engine.normalizer import generate_dedupe_key, generate_signal_id

logger = logging.getLogger("kestrel.signals")

DEFAULT_COOLDOWNS = {
    SignalType.HOTSPOT_ESCALATION: timedelta(hours=2),
    SignalType.MILITARY_SURGE: timedelta(hours=1),
    SignalType.GEO_CONVERGENCE: timedelta(minutes=30),
}
DEFAULT_COOLDOWN = timedelta(minutes=30)

SIGNAL_CONTEXT: dict[SignalType, SignalContext] = {
    SignalType.PREDICTION_LEADS_NEWS: SignalContext(
        why_it_matters="Prediction markets often price in information before it becomes news.",
        actionable_insight="Monitor for breaking news in the next 1-6 hours that could explain the move.",
        confidence_note="Higher confidence if multiple prediction markets move in the same direction.",
    ),
    SignalType.NEWS_LEADS_MARKETS: SignalContext(
        why_it_matters="News is breaking faster than markets are reacting.",
        actionable_insight="Watch for market catch-up as traders digest the news.",
        confidence_note="Stronger signal if news is from Tier 1 wire services.",
    ),
    SignalType.SILENT_DIVERGENCE: SignalContext(
        why_it_matters="Market moving significantly without an identifiable news catalyst.",
        actionable_insight="Investigate alternative data sources; news may emerge later explaining the move.",
        confidence_note="Lower confidence as cause is unknown. Treat as early warning.",
    ),
    SignalType.VELOCITY_SPIKE: SignalContext(
        why_it_matters="A story is accelerating across multiple news sources.",
        actionable_insight="Expect official statements or market reactions on this topic.",
        confidence_note="Higher confidence with more sources, especially Tier 1.",
    ),
    SignalType.KEYWORD_SPIKE: SignalContext(
        why_it_matters="A term is appearing far above its baseline frequency across sources.",
        actionable_insight="Review related headlines and correlate with country instability.",
        confidence_note="Confidence grows with the baseline multiple and source diversity.",
    ),
    SignalType.CONVERGENCE: SignalContext(
        why_it_matters="Multiple independent source types confirm the same event.",
        actionable_insight="Treat as high-confidence intelligence.",
        confidence_note="Very high confidence when wire, government and intel sources align.",
    ),
    SignalType.TRIANGULATION: SignalContext(
        why_it_matters="Wire services, government sources and intel specialists are aligned.",
        actionable_insight="Actionable intelligence; expect market or policy reactions.",
        confidence_note="Highest confidence signal in the system.",
    ),
    SignalType.FLOW_DROP: SignalContext(
        why_it_matters="Physical commodity flow disruption detected.",
        actionable_insight="Monitor energy commodity prices; assess supply chain exposure.",
        confidence_note="Depends on disruption duration and alternative supply.",
    ),
    SignalType.FLOW_PRICE_DIVERGENCE: SignalContext(
        why_it_matters="Supply disruption news is not yet reflected in commodity prices.",
        actionable_insight="Either markets are slow to react or the disruption is overstated.",
        confidence_note="Medium confidence.",
    ),
    SignalType.GEO_CONVERGENCE: SignalContext(
        why_it_matters="Multiple event types are clustering around the same location.",
        actionable_insight="Increase monitoring priority for this region; correlate with AIS and flight data.",
        confidence_note="Higher confidence if events span multiple source types and time periods.",
    ),
    SignalType.EXPLAINED_MARKET_MOVE: SignalContext(
        why_it_matters="Market move has a clear news catalyst.",
        actionable_insight="Assess whether the reaction is proportional to the news.",
        confidence_note="High confidence; news and price action are correlated.",
    ),
    SignalType.HOTSPOT_ESCALATION: SignalContext(
        why_it_matters=(
            "Geopolitical hotspot showing significant escalation based on news activity, "
            "country instability, geographic convergence and military presence."
        ),
        actionable_insight="Increase monitoring priority; assess downstream impacts on regional stability.",
        confidence_note=(
            "Weighted across news (35%), country instability (25%), "
            "geo-convergence (25%) and military activity (15%)."
        ),
    ),
    SignalType.SECTOR_CASCADE: SignalContext(
        why_it_matters="Market movement is cascading across related sectors.",
        actionable_insight="Identify the primary catalyst; assess exposure across correlated assets.",
        confidence_note="Higher confidence when several sectors move with similar velocity.",
    ),
    SignalType.MILITARY_SURGE: SignalContext(
        why_it_matters="Military activity significantly above baseline.",
        actionable_insight="Correlate with regional news; assess nearby base activity and naval movements.",
        confidence_note="Higher confidence with sustained activity and diverse aircraft types.",
    ),
}

Subscriber = Callable[[list[Signal]], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SignalEmitter:
    """Thresholded, deduplicated, rate-limited signal output."""

    def __init__(
        self,
        cooldowns: Optional[dict[SignalType, timedelta]] = None,
        default_cooldown: timedelta = DEFAULT_COOLDOWN,
        history_size: int = 500,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.cooldowns = {**DEFAULT_COOLDOWNS, **(cooldowns or {})}
        self.default_cooldown = default_cooldown
        self._clock = clock
        self._last_emitted: dict[tuple[SignalType, str], datetime] = {}
        self._seen_keys: dict[str, datetime] = {}
        self.history: deque[Signal] = deque(maxlen=history_size)
        self._subscribers: list[Subscriber] = []

    def cooldown_for(self, signal_type: SignalType) -> timedelta:
        return self.cooldowns.get(signal_type, self.default_cooldown)

    def is_cooling_down(self, signal_type: SignalType, subject_id: str, now: Optional[datetime] = None) -> bool:
        last = self._last_emitted.get((signal_type, subject_id))
        if last is None:
            return False
        return (now or self._clock()) - last < self.cooldown_for(signal_type)

    def last_emitted(self, signal_type: SignalType, subject_id: str) -> Optional[datetime]:
        return self._last_emitted.get((signal_type, subject_id))

    def propose(
        self,
        signal_type: SignalType,
        subject_id: str,
        score: float,
        confidence: float,
        *,
        title: str = "",
        description: str = "",
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[Signal]:
        """Emit a signal unless its subject is cooling down or its key was just seen."""
        now = self._clock()
        self._expire_keys(now)

        if self.is_cooling_down(signal_type, subject_id, now):
            logger.debug("[signals] %s:%s suppressed (cooldown)", signal_type.value, subject_id)
            return None

        dedupe_key = generate_dedupe_key(signal_type, subject_id, score)
        if dedupe_key in self._seen_keys:
            logger.debug("[signals] %s suppressed (duplicate)", dedupe_key)
            return None

        signal = Signal(
            id=generate_signal_id(),
            type=signal_type,
            subject_id=subject_id,
            title=title,
            description=description,
            score=score,
            confidence=max(0.0, min(1.0, confidence)),
            dedupe_key=dedupe_key,
            context=SIGNAL_CONTEXT[signal_type],
            timestamp=now,
            metadata=metadata or {},
        )
        self._last_emitted[(signal_type, subject_id)] = now
        self._seen_keys[dedupe_key] = now
        self.history.append(signal)
        logger.info("[signals] Emitted %s (score %.2f, confidence %.2f)", dedupe_key, score, signal.confidence)
        return signal

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    async def publish(self, signals: list[Signal]) -> None:
        """Fan emitted signals out to every subscriber. One failing subscriber does not block the rest."""
        if not signals:
            return
        for callback in list(self._subscribers):
            try:
                await callback(signals)
            except Exception as e:
                logger.error("[signals] Subscriber %s failed: %s", getattr(callback, "__name__", callback), e)

    def recent(self, count: int = 100) -> list[Signal]:
        items = list(self.history)
        return items[-count:]

    def _expire_keys(self, now: datetime) -> None:
        expired = []
        for key, seen_at in self._seen_keys.items():
            signal_type = SignalType(key.split(":", 1)[0])
            if now - seen_at >= self.cooldown_for(signal_type):
                expired.append(key)
        for key in expired:
            del self._seen_keys[key]

        elapsed = [
            subject for subject, emitted_at in self._last_emitted.items()
            if now - emitted_at >= self.cooldown_for(subject[0])
        ]
        for subject in elapsed:
            del self._last_emitted[subject]
