from proctorhub.core.async_task import AsyncTask
from proctorhub.core.celery_app import celery_app
from proctorhub.core.config import settings
from proctorhub.core.database import AsyncSessionLocal
from proctorhub.services.session_service import SessionService
from proctorhub.services.signaling_service import SignalingService
import logging

logger = logging.getLogger(__name__)


async def _sweep_sessions_internal():
    """Retire completed, ended and stale sessions"""
    async with AsyncSessionLocal() as db:
        try:
            swept = await SessionService(db).sweep()
        except Exception:
            await db.rollback()
            raise
    return {'sessions_swept': swept}


async def _prune_signals_internal():
    """Drop superseded handshake payloads older than the retention window"""
    async with AsyncSessionLocal() as db:
        try:
            pruned = await SignalingService(db).prune(settings.signal_event_retention_seconds)
        except Exception:
            await db.rollback()
            raise
    return {'signals_pruned': pruned}


@celery_app.task(name="sweep_proctoring_sessions", base=AsyncTask)
async def sweep_proctoring_sessions():
    try:
        return await _sweep_sessions_internal()
    except Exception as exc:
        logger.error(f"Error in sweep_proctoring_sessions: {exc}")
        raise


@celery_app.task(name="prune_signaling_events", base=AsyncTask)
async def prune_signaling_events():
    try:
        return await _prune_signals_internal()
    except Exception as exc:
        logger.error(f"Error in prune_signaling_events: {exc}")
        raise
