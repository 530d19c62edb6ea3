"""
Health-check and retention workers.

Tasks:
  1. run_health_check: beat-driven trigger for the alert scheduler
  2. purge_notifications: daily retention sweep

Each task runs in a fresh event loop (asyncio.run), so it builds its own
engine and fanout client. The scheduler's local debounce table is
process-wide and survives across task invocations in the same worker.
"""

import asyncio

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.health_check.run_health_check",
    bind=True,
    acks_late=True,
)
def run_health_check(self, check_kind: str = "all", force: bool = False):
    """
    Ask the scheduler for a pass. Returns the outcome summary; a debounced
    trigger returns ran=False. Never retried: the next beat tick is the retry.
    """
    from alerts.fanout import build_fanout
    from alerts.scheduler import build_scheduler
    from core.config import get_settings

    task_id = self.request.id or "manual"

    async def _run():
        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        fanout = build_fanout(settings)
        try:
            session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            scheduler = build_scheduler(session_factory, fanout=fanout, settings=settings)
            outcome = await scheduler.run(check_kind, force=force)
            await scheduler.dispatcher.drain()
            return outcome.as_dict()
        finally:
            await fanout.close()
            await engine.dispose()

    try:
        summary = asyncio.run(_run())
    except Exception as exc:  # noqa: BLE001
        logger.error("health_check.task_failed", check_kind=check_kind, task_id=task_id, error=str(exc), exc_info=True)
        raise
    summary["task_id"] = task_id
    return summary


@celery_app.task(
    name="workers.health_check.purge_notifications",
    bind=True,
    max_retries=2,
    default_retry_delay=300,
)
def purge_notifications(self, retention_days: int | None = None):
    """Delete read/dismissed notifications and old run rows past the retention window."""
    from core.config import get_settings
    from db import store

    async def _purge():
        settings = get_settings()
        days = retention_days if retention_days is not None else settings.retention_days
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                notifications = await store.purge_notifications(db, days)
                runs = await store.purge_health_check_runs(db, days)
            summary = {
                "status": "success",
                "retention_days": days,
                "notifications_deleted": notifications,
                "health_check_runs_deleted": runs,
            }
            logger.info("retention.purge_complete", **summary)
            return summary
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_purge())
    except Exception as exc:  # noqa: BLE001
        logger.error("retention.purge_failed", error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
