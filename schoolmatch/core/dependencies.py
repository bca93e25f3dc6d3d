from functools import lru_cache

from sqlalchemy.ext.asyncio import async_sessionmaker

from schoolmatch.core.config import get_settings
from schoolmatch.core.database import async_session
from schoolmatch.services.email import ResendEmailChannel
from schoolmatch.services.notifications import NotificationDispatcher
from schoolmatch.services.pipeline import StatusSynchronizer


def get_session_factory() -> async_sessionmaker:
    """Session factory for work that outlives the request session."""
    return async_session


@lru_cache
def get_dispatcher() -> NotificationDispatcher:
    # One instance per process so the debounce window is shared by all requests
    settings = get_settings()
    return NotificationDispatcher(async_session, ResendEmailChannel(settings), settings)


@lru_cache
def get_status_synchronizer() -> StatusSynchronizer:
    return StatusSynchronizer(async_session, get_dispatcher(), get_settings())
