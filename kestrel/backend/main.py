"""
Kestrel — Main FastAPI Application
Real-time geopolitical scoring and alerting engine
"""

import asyncio
import logging
import sys
import os

# Add project root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from datetime import datetime, timezone
from typing import Optional

from backend.config import settings
from backend.models import SignalType
from backend.redis_manager import SignalStream
from backend.websocket_manager import ConnectionManager, envelope
from fusion_engine.engine import FusionEngine
from collectors.feed_collector import FeedCollector

# ─── Logging ───────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(name)-20s │ %(levelname)-7s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("kestrel.main")

# ─── Globals ───────────────────────────────────────
signal_stream = SignalStream(
    redis_url=settings.redis_url,
    stream_key=settings.redis_stream_key,
    use_redis=settings.use_redis,
)
ws_manager = ConnectionManager()
engine = FusionEngine(settings)
collector = FeedCollector(url=settings.feed_url, interval=settings.refresh_interval)

engine.emitter.subscribe(signal_stream.publish_signals)
engine.emitter.subscribe(ws_manager.broadcast_signals)


def score_state() -> dict:
    """Current scores across every scorer, for REST and the initial WS push."""
    return {
        "cii": [s.model_dump(mode="json") for s in engine.cii.current_scores()],
        "escalation": [s.model_dump(mode="json") for s in engine.escalation_snapshot()],
        "convergence": [c.model_dump(mode="json") for c in engine.clusters()],
        "surges": [s.model_dump(mode="json") for s in engine.surges],
    }


async def run_feed_loop():
    """Drive one fusion refresh cycle per ingestion snapshot."""
    async for snapshot in collector.start():
        if snapshot is None:
            continue
        try:
            await engine.refresh(snapshot)
        except Exception as e:
            logger.error("Refresh cycle failed: %s", e)
            continue
        await ws_manager.broadcast_scores(score_state())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: start workers and the feed loop on startup, stop on shutdown."""
    logger.info("═══════════════════════════════════════════════")
    logger.info("  KESTREL — Geopolitical Scoring Engine        ")
    logger.info("  Version %s", settings.app_version)
    logger.info("═══════════════════════════════════════════════")

    await signal_stream.connect()
    await engine.start()

    feed_task = asyncio.create_task(run_feed_loop())
    logger.info("Started feed collector: %s", settings.feed_url)

    yield

    # Shutdown
    logger.info("Shutting down Kestrel...")
    await collector.stop()
    feed_task.cancel()
    await engine.stop()
    await signal_stream.close()


# ─── FastAPI App ───────────────────────────────────
app = FastAPI(
    title="Kestrel",
    description="Country instability, hotspot escalation, geo-convergence and military surge scoring",
    version=settings.app_version,
    lifespan=lifespan,
)


# ─── REST Endpoints ───────────────────────────────
@app.get("/")
async def root():
    return {
        "name": "Kestrel",
        "version": settings.app_version,
        "status": "operational",
        "ws_clients": ws_manager.connection_count,
        "last_cycle_at": engine.last_cycle_at.isoformat() if engine.last_cycle_at else None,
        "last_fetch": collector.last_fetch.isoformat() if collector.last_fetch else None,
    }


@app.get("/api/cii")
async def get_cii():
    """Get Country Instability Index scores, highest first."""
    scores = engine.cii.current_scores()
    return {
        "count": len(scores),
        "countries": [s.model_dump(mode="json") for s in scores],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/api/cii/{code}")
async def get_country(code: str):
    """Get one country's current score and learning state."""
    country = engine.cii.countries.get(code.upper())
    if country is None or country.current is None:
        raise HTTPException(status_code=404, detail=f"No score for country {code.upper()}")
    return country.current.model_dump(mode="json")


@app.get("/api/escalation")
async def get_escalation():
    """Get the latest dynamic escalation sample per hotspot."""
    samples = engine.escalation_snapshot()
    return {
        "count": len(samples),
        "hotspots": [s.model_dump(mode="json") for s in samples],
    }


@app.get("/api/convergence")
async def get_convergence():
    """Get the current geographic convergence clusters."""
    clusters = engine.clusters()
    return {
        "count": len(clusters),
        "clusters": [c.model_dump(mode="json") for c in clusters],
    }


@app.get("/api/surges")
async def get_surges():
    """Get the surges and foreign presence detected on the last cycle."""
    return {
        "surges": [s.model_dump(mode="json") for s in engine.surges],
        "foreign_presence": [p.model_dump(mode="json") for p in engine.foreign_presence],
    }


@app.get("/api/signals")
async def get_signals(limit: int = 100, type: Optional[SignalType] = None):
    """Get recently emitted signals, optionally of one type."""
    signals = await signal_stream.get_recent_signals(limit, type)
    return {"count": len(signals), "signals": signals}


# ─── WebSocket Endpoint ───────────────────────────
@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for score batches and emitted signals."""
    await ws_manager.connect(websocket)

    await ws_manager.send_to(websocket, envelope(
        "initial_state",
        score_state(),
        signals=[s.model_dump(mode="json") for s in engine.emitter.recent(50)],
    ))

    try:
        while True:
            data = await websocket.receive_text()
            ws_manager.handle_client_message(websocket, data)
    except WebSocketDisconnect:
        ws_manager.disconnect(websocket)


# ─── Run ───────────────────────────────────────────
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=True,
    )
