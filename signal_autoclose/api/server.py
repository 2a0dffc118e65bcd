"""
FastAPI read and control surface for the expiration engine.

All routes live under /signals/expiration. Domain errors map to HTTP:
NotFoundError → 404, ValidationError → 422, InvalidTransitionError → 409.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, FastAPI, Path, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from signal_autoclose.app import ExpirationEngine
from signal_autoclose.domain.models import Signal, to_dict
from signal_autoclose.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from signal_autoclose.monitoring.logger import get_logger

logger = get_logger(__name__)


class CancelSignalRequest(BaseModel):
    signal_id: str = Field(min_length=1)
    reason: Optional[str] = None


class QueueExpirationCheckRequest(BaseModel):
    signal_id: str = Field(min_length=1)
    grace_period_minutes: Optional[int] = Field(default=None, ge=0, le=1440)


class SendWarningsRequest(BaseModel):
    minutes_before: int = Field(ge=5, le=1440)


def _signal_row(signal: Signal, timestamp_field: str) -> Dict[str, Any]:
    ts = getattr(signal, timestamp_field)
    return {
        "id": signal.id,
        "base_asset": signal.base_asset,
        "counter_asset": signal.counter_asset,
        timestamp_field: ts.isoformat() if ts else None,
        "copiers_count": signal.copiers_count,
    }


def _signal_list(signals: List[Signal], timestamp_field: str) -> Dict[str, Any]:
    return {"count": len(signals), "signals": [_signal_row(s, timestamp_field) for s in signals]}


def _queued(message: str, job) -> JSONResponse:
    return JSONResponse(status_code=202, content={"message": message, "job_id": job.id})


def build_router(engine: ExpirationEngine) -> APIRouter:
    router = APIRouter(prefix="/signals/expiration")

    # === Read surface ===

    @router.get("/summary")
    def get_summary():
        return to_dict(engine.queries.expiration_summary())

    @router.get("/check/{signal_id}")
    def check_signal(signal_id: str):
        return to_dict(engine.queries.check_expiration(signal_id))

    @router.get("/expired")
    def get_expired():
        return _signal_list(engine.queries.find_expired(), "expires_at")

    @router.get("/grace-period")
    def get_grace_period():
        return _signal_list(engine.queries.find_in_grace_period(), "grace_period_ends_at")

    @router.get("/approaching/{minutes}")
    def get_approaching(minutes: int = Path(ge=5, le=1440)):
        out = _signal_list(engine.queries.find_approaching(minutes), "expires_at")
        return {"minutes_before": minutes, **out}

    # === Preferences ===

    @router.get("/preferences/{user_id}")
    def get_preferences(user_id: str):
        return to_dict(engine.preferences.get_or_create(user_id))

    @router.put("/preferences/{user_id}")
    def update_preferences(user_id: str, changes: Dict[str, Any] = Body(...)):
        return to_dict(engine.preferences.update(user_id, changes))

    # === Manual actions ===

    @router.post("/cancel")
    def cancel_signal(request: CancelSignalRequest):
        signal = engine.transitions.cancel(request.signal_id)
        result = engine.orchestrator.handle_cancellation(signal)
        logger.info("Signal cancelled via API", signal_id=request.signal_id, reason=request.reason)
        return {"message": "Signal cancelled successfully", "result": to_dict(result)}

    # === Background jobs ===

    @router.post("/jobs/check-single")
    def queue_check_single(request: QueueExpirationCheckRequest):
        job = engine.orchestrator.queue_expiration_check(request.signal_id, request.grace_period_minutes)
        return _queued("Expiration check queued", job)

    @router.post("/jobs/check-all")
    def queue_check_all():
        return _queued("Batch expiration check queued", engine.orchestrator.queue_batch_expiration_check())

    @router.post("/jobs/check-grace-periods")
    def queue_check_grace():
        return _queued("Grace period check queued", engine.orchestrator.queue_grace_period_check())

    @router.post("/jobs/send-warnings")
    def queue_send_warnings(request: SendWarningsRequest):
        job = engine.orchestrator.queue_expiration_warnings(request.minutes_before)
        return _queued("Expiration warnings job queued", job)

    @router.get("/jobs/{job_id}/status")
    def get_job_status(job_id: str):
        job = engine.queue.get_job(job_id)
        if job is None:
            raise NotFoundError("Job", job_id)
        returnvalue = job.returnvalue
        if returnvalue is not None and hasattr(returnvalue, "__dataclass_fields__"):
            returnvalue = to_dict(returnvalue)
        return {
            "job_id": job.id,
            "name": job.name,
            "state": job.state,
            "progress": job.progress,
            "data": job.data,
            "returnvalue": returnvalue,
            "failed_reason": job.failed_reason,
            "processed_on": job.processed_on.isoformat() if job.processed_on else None,
            "finished_on": job.finished_on.isoformat() if job.finished_on else None,
        }

    # === Notifications ===

    @router.get("/notifications/{user_id}")
    def get_notifications(
        user_id: str,
        limit: int = Query(50, ge=1, le=100),
        offset: int = Query(0, ge=0),
    ):
        notifications = engine.notifications.list_for_user(user_id, limit=limit, offset=offset)
        return {"count": len(notifications), "notifications": [to_dict(n) for n in notifications]}

    @router.get("/notifications/{user_id}/unread")
    def get_unread_notifications(user_id: str):
        notifications = engine.notifications.list_unread(user_id)
        return {"count": len(notifications), "notifications": [to_dict(n) for n in notifications]}

    @router.post("/notifications/{notification_id}/read")
    def mark_notification_read(notification_id: str):
        notification = engine.notifications.mark_read(notification_id)
        return {"message": "Notification marked as read", "notification": to_dict(notification)}

    @router.post("/notifications/{user_id}/read-all")
    def mark_all_notifications_read(user_id: str):
        count = engine.notifications.mark_all_read(user_id)
        return {"message": "All notifications marked as read", "count": count}

    return router


def create_app(engine: ExpirationEngine, run_scheduler: bool = False) -> FastAPI:
    """
    Build the FastAPI app.

    With run_scheduler=True the periodic expiration scheduler runs as a
    background task for the lifetime of the app, which also drains jobs
    queued through the /jobs routes.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler = None
        task = None
        if run_scheduler:
            scheduler = engine.scheduler()
            task = asyncio.create_task(scheduler.run())
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.stop()
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    app = FastAPI(title="Signal Expiration & Auto-Close", lifespan=lifespan)

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def _invalid(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(InvalidTransitionError)
    async def _conflict(request: Request, exc: InvalidTransitionError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "environment": engine.config.environment,
            "database_pool": engine.db.pool_status(),
        }

    app.include_router(build_router(engine))
    return app
