import time
from fastapi import FastAPI, Depends, HTTPException, Header
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from typing import Optional
from .config import settings
from .engine import ProgressSyncEngine, now_ms
from .models import Locator, SyncReason

app = FastAPI(title="Reading Progress Sync")
engine: Optional[ProgressSyncEngine] = None
last_queue_drain: float = 0.0

class ProgressUpdate(BaseModel):
    locator: Locator
    timestamp: Optional[int] = None
    reason: SyncReason = SyncReason.PERIODIC_WHILE_READING
    source_identifier: Optional[str] = None
    location_description: Optional[str] = None

class RestoreRequest(BaseModel):
    locator: Locator
    location_description: Optional[str] = None

def get_token(x_token: Optional[str] = Header(None, alias="X-Token")):
    if settings.HTTP_SERVER_TOKEN and x_token != settings.HTTP_SERVER_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid token")

def get_engine() -> ProgressSyncEngine:
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not ready")
    return engine

@app.get("/healthz")
def healthz():
    if not engine:
        return {"status": "starting"}

    pending = engine.get_pending_syncs()
    oldest = min((p.queued_at for p in pending), default=None)
    # Entries stuck for 3 retry intervals usually mean a backend is down
    if oldest and now_ms() - oldest > (settings.QUEUE_RETRY_INTERVAL_SECONDS * 3 + 60) * 1000:
        return {"status": "lagging", "pending": len(pending), "oldest_pending_age_s": (now_ms() - oldest) / 1000}

    return {"status": "ok"}

@app.get("/status", dependencies=[Depends(get_token)])
def status(sync_engine: ProgressSyncEngine = Depends(get_engine)):
    return {
        "pending": len(sync_engine.get_pending_syncs()),
        "tracked_books": len(sync_engine.get_all_book_progress()),
        "last_queue_drain": last_queue_drain,
        "primary": sync_engine.primary.connection_status.model_dump(mode="json"),
        "secondary": sync_engine.secondary.connection_status.model_dump(mode="json") if sync_engine.secondary else None,
        "config": {
            "secondary_enabled": sync_engine.secondary_enabled,
            "retry_interval": settings.QUEUE_RETRY_INTERVAL_SECONDS,
            "discard_rejected": settings.DISCARD_REJECTED_UPDATES
        }
    }

@app.get("/metrics", response_class=PlainTextResponse)
def metrics():
    # Simple prometheus-style text format
    if not engine:
        return ""

    lines = [
        f'progress_sync_pending_entries {len(engine.get_pending_syncs())}',
        f'progress_sync_tracked_books {len(engine.get_all_book_progress())}',
        f'progress_sync_last_queue_drain_timestamp {last_queue_drain}',
        f'progress_sync_primary_connected {int(engine.primary.is_connected)}',
        f'progress_sync_secondary_connected {int(bool(engine.secondary and engine.secondary.is_connected))}'
    ]
    return "\n".join(lines) + "\n"

@app.post("/books/{book_id}/progress", dependencies=[Depends(get_token)])
async def post_progress(book_id: str, update: ProgressUpdate, sync_engine: ProgressSyncEngine = Depends(get_engine)):
    result = await sync_engine.sync_progress(
        book_id,
        update.locator,
        update.timestamp if update.timestamp is not None else now_ms(),
        update.reason,
        source_identifier=update.source_identifier,
        location_description=update.location_description
    )
    return {"result": result.value}

@app.get("/books/{book_id}/progress", dependencies=[Depends(get_token)])
def get_progress(book_id: str, sync_engine: ProgressSyncEngine = Depends(get_engine)):
    progress = sync_engine.get_book_progress(book_id)
    if progress is None:
        raise HTTPException(status_code=404, detail="No known position")
    return {**progress.model_dump(mode="json", by_alias=True), "progress_fraction": progress.progress_fraction}

@app.get("/progress", dependencies=[Depends(get_token)])
def get_all_progress(sync_engine: ProgressSyncEngine = Depends(get_engine)):
    return {book_id: p.model_dump(mode="json", by_alias=True) for book_id, p in sync_engine.get_all_book_progress().items()}

@app.get("/books/{book_id}/history", dependencies=[Depends(get_token)])
def get_history(book_id: str, sync_engine: ProgressSyncEngine = Depends(get_engine)):
    return [
        {**entry.model_dump(mode="json", by_alias=True), "human_timestamp": entry.human_timestamp}
        for entry in sync_engine.get_sync_history(book_id)
    ]

@app.delete("/books/{book_id}/history", dependencies=[Depends(get_token)])
def clear_history(book_id: str, sync_engine: ProgressSyncEngine = Depends(get_engine)):
    sync_engine.clear_sync_history(book_id)
    return {"cleared": book_id}

@app.post("/books/{book_id}/restore", dependencies=[Depends(get_token)])
async def restore(book_id: str, request: RestoreRequest, sync_engine: ProgressSyncEngine = Depends(get_engine)):
    result = await sync_engine.restore_position(book_id, request.locator, request.location_description)
    return {"result": result.value}

@app.get("/queue", dependencies=[Depends(get_token)])
def get_queue(sync_engine: ProgressSyncEngine = Depends(get_engine)):
    return [entry.model_dump(mode="json", by_alias=True) for entry in sync_engine.get_pending_syncs()]

@app.post("/queue/sync", dependencies=[Depends(get_token)])
async def drain_queue(sync_engine: ProgressSyncEngine = Depends(get_engine)):
    global last_queue_drain
    synced, failed = await sync_engine.sync_pending_queue()
    last_queue_drain = time.time()
    return {"synced": synced, "failed": failed}

@app.post("/reconcile", dependencies=[Depends(get_token)])
async def reconcile(sync_engine: ProgressSyncEngine = Depends(get_engine)):
    healed_primary, healed_secondary = await sync_engine.reconcile_with_secondary()
    return {"healed_to_primary": healed_primary, "healed_to_secondary": healed_secondary}
