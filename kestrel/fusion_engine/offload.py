"""Kestrel — Compute Offload Bridge.

Ships the CPU-heavy workloads (CII batch recompute, O(n²) geo
convergence) to isolated worker processes and merges results back on
the event loop.

Protocol (plain dict messages over multiprocessing queues):
  worker → {"type": "ready"}                      once, before serving
  main   → {"type": "calculate", "id", "tier", "countries": [...]}
  worker → {"type": "cii-result", "id", "scores": [...]}
  main   → {"type": "detect", "id", "events": [...], "thresholdKm"}
  worker → {"type": "convergence-result", "id", "clusters": [...]}
  worker → {"type": "error", "id", "error"}       on a request it cannot serve

Guarantees:
  - responses are matched to pending requests by caller-generated id;
    unknown (stale) ids and malformed payloads are logged and dropped
  - at most one request in flight per workload; a dispatch while one is
    outstanding returns None without dispatching
  - each round-trip has a timeout; a timed-out request is dropped by
    restarting its worker (so nothing stale stays queued behind it) and
    retried with a fresh id; a dead worker is restarted the same way
  - workers only see immutable snapshots and never touch history
"""

import asyncio
import logging
import multiprocessing as mp
import queue
import uuid
from typing import Optional

from pydantic import BaseModel, ValidationError

from backend.models import (
    CIIRequest, CIIRequestCountry, CIIResult, ConvergenceRequest, ConvergenceResult,
    GeoEvent, ReadyMessage, ScoringTier,
)
from fusion_engine.convergence import detect
from fusion_engine.country_instability import score_request_batch

logger = logging.getLogger("kestrel.offload")

WORKLOAD_CII = "cii"
WORKLOAD_CONVERGENCE = "convergence"

RESPONSE_TYPES = {
    WORKLOAD_CII: "cii-result",
    WORKLOAD_CONVERGENCE: "convergence-result",
}

_POLL_SECONDS = 0.5


class OffloadError(Exception):
    """A request could not be served by its worker."""


class OffloadTimeout(OffloadError):
    """No response arrived within the round-trip timeout."""


def handle_message(kind: str, message: dict) -> dict:
    """Serve one request. Pure: runs in the worker process (or inline)."""
    if kind == WORKLOAD_CII:
        request = CIIRequest.model_validate(message)
        scores = score_request_batch(request.countries, request.tier, request.warmupBaselineWeight)
        return CIIResult(id=request.id, scores=scores).model_dump(mode="json")
    if kind == WORKLOAD_CONVERGENCE:
        request = ConvergenceRequest.model_validate(message)
        clusters = detect(request.events, request.thresholdKm)
        return ConvergenceResult(id=request.id, clusters=clusters).model_dump(mode="json")
    raise ValueError(f"Unknown workload: {kind}")


def worker_main(kind: str, requests: mp.Queue, responses: mp.Queue) -> None:
    """Worker process entry point."""
    responses.put(ReadyMessage().model_dump())
    while True:
        message = requests.get()
        if message is None:
            break
        try:
            responses.put(handle_message(kind, message))
        except Exception as e:
            request_id = message.get("id") if isinstance(message, dict) else None
            responses.put({"type": "error", "id": request_id, "error": str(e)})


class OffloadWorker:
    """One isolated worker process plus the main-context bookkeeping for it."""

    def __init__(
        self,
        kind: str,
        timeout: float = 10.0,
        retries: int = 1,
        ready_timeout: float = 30.0,
        inline: bool = False,
    ):
        self.kind = kind
        self.timeout = timeout
        self.retries = retries
        self.ready_timeout = ready_timeout
        self.inline = inline
        self._ctx = mp.get_context("spawn")
        self._process = None
        self._requests = None
        self._responses = None
        self._pump_task: Optional[asyncio.Task] = None
        self._running = False
        self._ready: Optional[asyncio.Event] = None
        self._pending: dict[str, asyncio.Future] = {}
        self._busy = False

    @property
    def available(self) -> bool:
        if self.inline:
            return True
        return bool(self._ready and self._ready.is_set() and self._process and self._process.is_alive())

    @property
    def busy(self) -> bool:
        return self._busy

    async def start(self) -> bool:
        """Spawn the worker and wait for its ready announcement."""
        if self.inline:
            logger.info("[%s] Offload running inline", self.kind)
            return True

        self._requests = self._ctx.Queue()
        self._responses = self._ctx.Queue()
        self._ready = asyncio.Event()
        self._process = self._ctx.Process(
            target=worker_main,
            args=(self.kind, self._requests, self._responses),
            name=f"kestrel-{self.kind}-worker",
            daemon=True,
        )
        self._process.start()
        self._running = True
        self._pump_task = asyncio.create_task(self._pump())

        try:
            await asyncio.wait_for(self._ready.wait(), self.ready_timeout)
        except asyncio.TimeoutError:
            logger.error("[%s] Worker did not report ready within %.0fs", self.kind, self.ready_timeout)
            return False
        logger.info("[%s] Worker ready (pid=%s)", self.kind, self._process.pid)
        return True

    async def stop(self) -> None:
        await self._shutdown(graceful=True)
        if not self.inline:
            logger.info("[%s] Worker stopped", self.kind)

    async def _shutdown(self, graceful: bool) -> None:
        if self.inline or self._process is None:
            return
        self._running = False
        loop = asyncio.get_running_loop()
        if graceful:
            try:
                self._requests.put(None)
            except Exception as e:
                logger.debug("[%s] Stop sentinel failed: %s", self.kind, e)
            await loop.run_in_executor(None, self._process.join, 2.0)
        if self._process.is_alive():
            self._process.terminate()
            await loop.run_in_executor(None, self._process.join, 1.0)
        if self._pump_task:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
        for future in self._pending.values():
            if not future.done():
                future.cancel()
        self._pending.clear()

    async def request(self, message: dict, result_model: type[BaseModel]) -> Optional[BaseModel]:
        """Dispatch a request and await its validated result, or None on failure/busy."""
        if self._busy:
            logger.debug("[%s] Request skipped: previous request still in flight", self.kind)
            return None
        self._busy = True
        try:
            for attempt in range(self.retries + 1):
                request_id = uuid.uuid4().hex
                payload = {**message, "id": request_id}
                try:
                    raw = await self._round_trip(request_id, payload)
                    result = result_model.model_validate(raw)
                except OffloadTimeout:
                    logger.warning(
                        "[%s] Request %s timed out after %.1fs (attempt %d)",
                        self.kind, request_id[:8], self.timeout, attempt + 1,
                    )
                    await self._restart("request timed out")
                    continue
                except (OffloadError, ValidationError) as e:
                    logger.warning("[%s] Request %s failed: %s", self.kind, request_id[:8], e)
                    await self._ensure_alive()
                    continue
                if getattr(result, "id", request_id) != request_id:
                    logger.warning("[%s] Response id mismatch, dropped", self.kind)
                    continue
                return result
            logger.error("[%s] Giving up after %d attempts", self.kind, self.retries + 1)
            return None
        finally:
            self._busy = False

    async def _round_trip(self, request_id: str, payload: dict) -> dict:
        if self.inline:
            try:
                return handle_message(self.kind, payload)
            except Exception as e:
                raise OffloadError(str(e)) from e

        if not self.available:
            raise OffloadError("worker not available")

        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            self._requests.put(payload)
            return await asyncio.wait_for(future, self.timeout)
        except asyncio.TimeoutError:
            raise OffloadTimeout(request_id)
        finally:
            self._pending.pop(request_id, None)

    async def _ensure_alive(self) -> None:
        if self.inline or (self._process and self._process.is_alive()):
            return
        await self._restart("process died")

    async def _restart(self, reason: str) -> None:
        """Replace the worker, discarding anything still queued for the old one."""
        if self.inline:
            return
        logger.warning("[%s] Restarting worker: %s", self.kind, reason)
        await self._shutdown(graceful=False)
        await self.start()

    async def _pump(self) -> None:
        """Read worker responses off the queue and resolve pending futures."""
        loop = asyncio.get_running_loop()
        while self._running:
            message = await loop.run_in_executor(None, self._read_response)
            if message is not None:
                self._dispatch(message)

    def _read_response(self) -> Optional[dict]:
        try:
            return self._responses.get(timeout=_POLL_SECONDS)
        except queue.Empty:
            return None
        except (EOFError, OSError) as e:
            logger.debug("[%s] Response queue closed: %s", self.kind, e)
            return None

    def _dispatch(self, message) -> None:
        if not isinstance(message, dict) or "type" not in message:
            logger.warning("[%s] Malformed worker message dropped: %r", self.kind, message)
            return

        if message["type"] == "ready":
            self._ready.set()
            return

        request_id = message.get("id")
        future = self._pending.get(request_id) if request_id else None
        if future is None or future.done():
            logger.debug("[%s] Stale response %s ignored", self.kind, request_id)
            return

        if message["type"] == "error":
            future.set_exception(OffloadError(message.get("error", "worker error")))
        elif message["type"] != RESPONSE_TYPES[self.kind]:
            future.set_exception(OffloadError(f"unexpected response type {message['type']!r}"))
        else:
            future.set_result(message)


class ComputeOffloadBridge:
    """Typed request/response channel to the CII and convergence workers."""

    def __init__(self, timeout: float = 10.0, retries: int = 1, ready_timeout: float = 30.0,
                 inline: bool = False):
        self.cii = OffloadWorker(WORKLOAD_CII, timeout, retries, ready_timeout, inline)
        self.convergence = OffloadWorker(WORKLOAD_CONVERGENCE, timeout, retries, ready_timeout, inline)

    async def start(self) -> None:
        await asyncio.gather(self.cii.start(), self.convergence.start())

    async def stop(self) -> None:
        await asyncio.gather(self.cii.stop(), self.convergence.stop())

    async def calculate_cii(
        self,
        countries: list[CIIRequestCountry],
        tier: ScoringTier = ScoringTier.FAST,
        warmup_baseline_weight: float = 0.6,
    ) -> Optional[CIIResult]:
        message = {
            "type": "calculate",
            "tier": tier.value,
            "warmupBaselineWeight": warmup_baseline_weight,
            "countries": [c.model_dump(mode="json") for c in countries],
        }
        return await self.cii.request(message, CIIResult)

    async def detect_convergence(self, events: list[GeoEvent], threshold_km: float) -> Optional[ConvergenceResult]:
        message = {
            "type": "detect",
            "events": [e.model_dump(mode="json") for e in events],
            "thresholdKm": threshold_km,
        }
        return await self.convergence.request(message, ConvergenceResult)
