"""In-app notification inbox: listing and read state."""

from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from schoolmatch.core.concurrency import with_timeout
from schoolmatch.core.config import Settings, get_settings
from schoolmatch.core.errors import RecordNotFound
from schoolmatch.models.notification import Notification
from schoolmatch.schemas.notification import NotificationResponse, PaginatedNotifications


async def list_inbox(
    db: AsyncSession,
    user_id: UUID,
    read: bool | None = None,
    page: int = 1,
    page_size: int = 20,
    settings: Settings | None = None,
) -> PaginatedNotifications:
    """Newest first. ``unread_count`` ignores the ``read`` filter."""
    settings = settings or get_settings()
    owned = Notification.user_id == user_id
    filters = [owned] if read is None else [owned, Notification.read == read]

    async def fetch():
        total = await db.scalar(select(func.count(Notification.id)).where(*filters))
        unread = await db.scalar(select(func.count(Notification.id)).where(owned, Notification.read.is_(False)))
        rows = await db.execute(
            select(Notification)
            .where(*filters)
            .order_by(Notification.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return total or 0, unread or 0, rows.scalars().all()

    total, unread, notifications = await with_timeout(
        fetch(),
        settings.STORE_READ_TIMEOUT_SECONDS,
        operation="list_notifications",
    )
    return PaginatedNotifications(
        items=[NotificationResponse.model_validate(n) for n in notifications],
        total=total,
        unread_count=unread,
        page=page,
        page_size=page_size,
    )


async def mark_read(
    db: AsyncSession,
    user_id: UUID,
    notification_id: UUID,
    settings: Settings | None = None,
) -> None:
    settings = settings or get_settings()
    result = await with_timeout(
        db.execute(
            update(Notification)
            .where(Notification.id == notification_id, Notification.user_id == user_id)
            .values(read=True)
        ),
        settings.STORE_WRITE_TIMEOUT_SECONDS,
        operation="mark_notification_read",
        primary=True,
    )
    if result.rowcount == 0:
        raise RecordNotFound("Notification not found", operation="mark_notification_read")


async def mark_all_read(db: AsyncSession, user_id: UUID, settings: Settings | None = None) -> int:
    settings = settings or get_settings()
    result = await with_timeout(
        db.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.read.is_(False))
            .values(read=True)
        ),
        settings.STORE_WRITE_TIMEOUT_SECONDS,
        operation="mark_all_notifications_read",
        primary=True,
    )
    return result.rowcount
