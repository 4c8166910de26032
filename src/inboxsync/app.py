"""inboxsync application entry point (FastAPI).

Architecture:
- FastAPI for the Meta webhook, manual sync/backfill triggers, health and metrics
- APScheduler for periodic reconciliation sync and identity backfill
- Async SQLAlchemy for the conversation/message store
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

import structlog
from fastapi import BackgroundTasks, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy import text

from inboxsync.accounts import stamp_webhook_verified
from inboxsync.config import settings
from inboxsync.db.session import close_db, db_session
from inboxsync.errors import AuthError, SyncInProgressError, UpstreamError
from inboxsync.ingest.signature import verify_signature
from inboxsync.observability.metrics import get_metrics
from inboxsync.service import InboxSyncService, close_service, get_service
from inboxsync.store.queries import get_identity, list_conversations, list_messages, mark_read

logger = structlog.get_logger()


def configure_logging(level: str | None = None) -> None:
    """Configure structlog once for the process."""
    level_name = (level or settings.log_level).upper()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
            if settings.env == "production"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


def _service(request: Request) -> InboxSyncService:
    return request.app.state.service


def _auth_error_body(e: AuthError) -> dict[str, Any]:
    return {"error": {"type": "auth", "code": e.code, "message": str(e)}}


# ═══════════════════════════════════════════════════════════════════════════════
# APP FACTORY
# ═══════════════════════════════════════════════════════════════════════════════

def create_app(
    service: InboxSyncService | None = None,
    enable_scheduler: bool | None = None,
    app_secret: str | None = None,
    verify_token: str | None = None,
) -> FastAPI:
    run_scheduler = settings.scheduler_enabled if enable_scheduler is None else enable_scheduler
    secret = settings.meta_app_secret if app_secret is None else app_secret
    expected_verify_token = settings.webhook_verify_token if verify_token is None else verify_token

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Application lifespan manager."""
        logger.info("app_starting", env=settings.env, scheduler=run_scheduler)
        scheduler = None
        if run_scheduler:
            from inboxsync.jobs.scheduler import SyncScheduler

            scheduler = SyncScheduler(app.state.service)
            await scheduler.start()
        app.state.scheduler = scheduler

        yield

        logger.info("app_shutting_down")
        if scheduler is not None:
            await scheduler.stop()
        if service is None:
            await close_service()
            await close_db()

    app = FastAPI(
        title="inboxsync",
        version="0.1.0",
        description="Instagram DM inbox synchronization engine",
        lifespan=lifespan,
    )
    app.state.service = service or get_service()
    app.state.scheduler = None

    # ── Error mapping ───────────────────────────────────────────────────

    @app.exception_handler(AuthError)
    async def _on_auth_error(request: Request, e: AuthError) -> JSONResponse:
        logger.warning("request_auth_failed", path=request.url.path, code=e.code)
        return JSONResponse(status_code=401, content=_auth_error_body(e))

    @app.exception_handler(SyncInProgressError)
    async def _on_busy(request: Request, e: SyncInProgressError) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={"error": {"type": "sync_in_progress", "message": str(e)}},
        )

    @app.exception_handler(UpstreamError)
    async def _on_upstream(request: Request, e: UpstreamError) -> JSONResponse:
        logger.error("request_upstream_failed", path=request.url.path, error=str(e))
        return JSONResponse(
            status_code=502,
            content={
                "error": {
                    "type": "upstream",
                    "message": str(e),
                    "status_code": e.status_code,
                }
            },
        )

    # ── Health / metrics ────────────────────────────────────────────────

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "inboxsync"}

    @app.get("/health/db")
    async def health_db(request: Request) -> dict[str, str]:
        """Database health check."""
        try:
            async with db_session(_service(request).session_factory) as db:
                await db.execute(text("SELECT 1"))
            return {"status": "ok", "database": "connected"}
        except Exception as e:
            logger.error("db_health_check_failed", error=str(e))
            return {"status": "error", "database": "disconnected"}

    @app.get("/metrics")
    async def metrics_endpoint(request: Request) -> dict[str, Any]:
        """Counters and latency histograms for writes, identity fetches and syncs."""
        snap = await get_metrics().snapshot()
        scheduler = request.app.state.scheduler
        snap["scheduled_jobs"] = scheduler.list_jobs() if scheduler else []
        return snap

    # ── Webhook ─────────────────────────────────────────────────────────

    @app.get("/webhooks/instagram")
    async def webhook_verify(
        request: Request,
        mode: str | None = Query(default=None, alias="hub.mode"),
        token: str | None = Query(default=None, alias="hub.verify_token"),
        challenge: str | None = Query(default=None, alias="hub.challenge"),
    ) -> PlainTextResponse:
        """Meta subscription handshake."""
        if (
            mode != "subscribe"
            or not expected_verify_token
            or token != expected_verify_token
        ):
            logger.warning("webhook_verify_rejected", mode=mode)
            raise HTTPException(status_code=403, detail="Verification failed")
        stamped = await stamp_webhook_verified(factory=_service(request).session_factory)
        logger.info("webhook_verified", accounts=stamped)
        return PlainTextResponse(challenge or "")

    @app.post("/webhooks/instagram")
    async def webhook_receive(request: Request, background: BackgroundTasks) -> dict[str, bool]:
        if not secret:
            logger.error("webhook_secret_missing")
            raise HTTPException(status_code=500, detail="Webhook secret not configured")

        body = await request.body()
        if not verify_signature(body, request.headers.get("X-Hub-Signature-256"), secret):
            logger.warning("webhook_signature_invalid")
            raise HTTPException(status_code=403, detail="Invalid signature")

        try:
            payload = json.loads(body)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON")
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid JSON")

        background.add_task(_service(request).webhook.process_payload, payload)
        return {"ok": True}

    # ── Triggers ────────────────────────────────────────────────────────

    @app.post("/accounts/{account_id}/sync")
    async def trigger_sync(
        account_id: str,
        request: Request,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> dict[str, Any]:
        summary = await _service(request).sync.run(account_id, since=since, until=until)
        return summary.to_dict()

    @app.post("/accounts/{account_id}/identities/backfill")
    async def trigger_backfill(account_id: str, request: Request) -> dict[str, Any]:
        summary = await _service(request).backfill_identities(account_id)
        return summary.to_dict()

    @app.post("/accounts/{account_id}/identities/refresh")
    async def trigger_refresh(account_id: str, request: Request) -> dict[str, Any]:
        summary = await _service(request).refresh_identities(account_id)
        return summary.to_dict()

    @app.post("/accounts/{account_id}/conversations/{conversation_id}/read")
    async def mark_conversation_read(
        account_id: str, conversation_id: str, request: Request,
    ) -> dict[str, Any]:
        async with db_session(_service(request).session_factory) as db:
            marked = await mark_read(db, account_id, conversation_id)
        return {"success": True, "marked": marked}

    # ── Read side ───────────────────────────────────────────────────────

    @app.get("/accounts/{account_id}/conversations")
    async def conversations(
        account_id: str, request: Request, limit: int | None = None,
    ) -> list[dict[str, Any]]:
        async with db_session(_service(request).session_factory) as db:
            rows = await list_conversations(db, account_id, limit=limit)
        return [row.to_dict() for row in rows]

    @app.get("/conversations/{conversation_id}/messages")
    async def messages(
        conversation_id: str, request: Request, limit: int | None = None,
    ) -> list[dict[str, Any]]:
        async with db_session(_service(request).session_factory) as db:
            rows = await list_messages(db, conversation_id, limit=limit)
        return [{k: v for k, v in row.to_dict().items() if k != "raw"} for row in rows]

    @app.get("/identities/{participant_id}")
    async def identity(participant_id: str, request: Request) -> dict[str, Any]:
        async with db_session(_service(request).session_factory) as db:
            entry = await get_identity(db, participant_id)
        if entry is None:
            raise HTTPException(status_code=404, detail="Unknown participant")
        return {k: v for k, v in entry.to_dict().items() if k != "raw"}

    return app


# ═══════════════════════════════════════════════════════════════════════════════
# MAIN ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════════════

def main() -> None:
    """Run the API server with uvicorn."""
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(description="inboxsync API server")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()

    configure_logging()
    uvicorn.run(create_app(), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
