"""FastAPI app — foreground SMS listener webhook, manual sync, notification
actions, voice capture.

Run with: uvicorn smsledger.app:create_app --factory
"""

import asyncio
import logging
import time
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field

from smsledger.errors import RecordingBusyError, StorageError
from smsledger.runtime import Components
from smsledger.tools.notify import handle_category_action

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class SmsEvent(BaseModel):
    """Shape forwarded by the on-device SMS receiver."""
    originatingAddress: str
    body: str
    timestamp: Optional[int] = None  # epoch ms
    id: Optional[str] = Field(default=None, alias="_id")


class TokenRequest(BaseModel):
    token: Optional[str] = None  # None logs out


class NotificationAction(BaseModel):
    action_id: str = ""
    transaction_id: str = ""


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_components(request: Request) -> Components:
    return request.app.state.components


async def verify_ledger_auth(request: Request, x_ledger_auth: str = Header(None)):
    """Verify X-Ledger-Auth header for /api/v1/* endpoints."""
    secret = request.app.state.components.webhook_secret
    if not secret:
        logger.error("LEDGER_WEBHOOK_SECRET not configured — rejecting request")
        raise HTTPException(status_code=503, detail="Webhook authentication not configured")
    if x_ledger_auth != secret:
        raise HTTPException(status_code=401, detail="Invalid or missing X-Ledger-Auth header")


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(components: Optional[Components] = None) -> FastAPI:
    if components is None:
        from smsledger.runtime import build_foreground
        components = build_foreground()

    app = FastAPI(title="SMS Ledger")
    app.state.components = components
    app.state.sync_lock = asyncio.Lock()

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "ok"}

    @app.post("/api/v1/sms", dependencies=[Depends(verify_ledger_auth)])
    async def receive_sms(event: SmsEvent, comps: Components = Depends(get_components)):
        """Live listener callback: run one SMS through the pipeline and return its outcome."""
        start = time.time()
        result = await comps.foreground.on_sms_event(event.model_dump(by_alias=True))
        logger.info("SMS handled in %.1fs: %s", time.time() - start, result["outcome"])
        return result

    @app.post("/api/v1/sync", dependencies=[Depends(verify_ledger_auth)])
    async def manual_sync(request: Request, comps: Components = Depends(get_components)):
        """Flush the pending queue and backfill recent bank SMS. One run at a time."""
        lock: asyncio.Lock = request.app.state.sync_lock
        if lock.locked():
            raise HTTPException(status_code=409, detail="Sync already running")
        async with lock:
            summary = await comps.sync.run()
        comps.foreground.load_displayed()
        return {"status": "synced", **summary.to_dict()}

    @app.post("/api/v1/auth/token", dependencies=[Depends(verify_ledger_auth)])
    async def set_token(req: TokenRequest, comps: Components = Depends(get_components)):
        """App login/logout: keep the token in memory and in the durable store for headless runs."""
        comps.token_provider.set_token(req.token)
        try:
            comps.token_store.set_token(req.token)
        except OSError as e:
            logger.error("Failed to persist token: %s", e)
            raise HTTPException(status_code=500, detail="Could not persist token")
        return {"status": "ok", "authenticated": bool(req.token)}

    @app.post("/api/v1/notifications/action", dependencies=[Depends(verify_ledger_auth)])
    async def notification_action(req: NotificationAction, comps: Components = Depends(get_components)):
        """User tapped a category button (or the body) on a category-ask notification."""
        return await handle_category_action(
            req.action_id, req.transaction_id, comps.token_provider, comps.pipeline.ledger
        )

    @app.post("/api/v1/voice/start", dependencies=[Depends(verify_ledger_auth)])
    async def voice_start(comps: Components = Depends(get_components)):
        """Begin a voice-entry capture. Only one capture may be prepared at a time."""
        if comps.recorder is None:
            raise HTTPException(status_code=503, detail="Voice capture not available")
        try:
            await comps.recorder.start()
        except RecordingBusyError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"status": "recording"}

    @app.post("/api/v1/voice/stop", dependencies=[Depends(verify_ledger_auth)])
    async def voice_stop(comps: Components = Depends(get_components)):
        """Stop the active capture and return the audio file URI (null if nothing was recording)."""
        if comps.recorder is None:
            raise HTTPException(status_code=503, detail="Voice capture not available")
        try:
            uri = await comps.recorder.stop()
        except RecordingBusyError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"status": "stopped", "uri": uri}

    @app.get("/api/v1/transactions/cached", dependencies=[Depends(verify_ledger_auth)])
    async def cached_transactions(comps: Components = Depends(get_components)):
        """Offline view: displayed list (including optimistic rows) and queue size."""
        try:
            pending = len(comps.store.get_pending_queue())
        except StorageError as e:
            logger.warning("Pending queue unreadable: %s", e)
            pending = None
        return {
            "transactions": comps.foreground.displayed,
            "pending": pending,
            "last_sync_time": comps.store.get_last_sync_time(),
        }

    return app
