import asyncio

import structlog
from celery import shared_task

logger = structlog.get_logger()


async def _process_queue(batch_size: int | None) -> dict[str, int]:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
    from sqlalchemy.pool import NullPool

    from schoolmatch.core.config import get_settings
    from schoolmatch.services.email import ResendEmailChannel
    from schoolmatch.services.notifications import NotificationDispatcher

    settings = get_settings()
    # Each task run has its own event loop, so connections must not be pooled across runs
    engine = create_async_engine(settings.DATABASE_URL, poolclass=NullPool)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        dispatcher = NotificationDispatcher(session_factory, ResendEmailChannel(settings), settings)
        return await dispatcher.process_queue(batch_size)
    finally:
        await engine.dispose()


@shared_task(name="notifications.process_queue")
def process_queue(batch_size: int | None = None):
    """Periodic email queue run, scheduled by Celery beat."""
    counts = asyncio.run(_process_queue(batch_size))
    logger.info("process_queue_task_done", **counts)
    return counts
