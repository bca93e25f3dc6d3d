from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from schoolmatch.core.database import get_db
from schoolmatch.core.dependencies import get_dispatcher
from schoolmatch.schemas.notification import PaginatedNotifications, QueueProcessResult
from schoolmatch.services import inbox
from schoolmatch.services.notifications import NotificationDispatcher

router = APIRouter(tags=["notifications"])


@router.get("/users/{user_id}/notifications", response_model=PaginatedNotifications)
async def list_notifications(
    user_id: UUID,
    read: bool | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """
    In-app notifications for a user, newest first.
    """
    return await inbox.list_inbox(db, user_id, read, page, page_size)


@router.patch("/users/{user_id}/notifications/{notification_id}/read")
async def mark_notification_read(
    user_id: UUID,
    notification_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    await inbox.mark_read(db, user_id, notification_id)
    return {"status": "ok"}


@router.patch("/users/{user_id}/notifications/read-all")
async def mark_all_read(user_id: UUID, db: AsyncSession = Depends(get_db)):
    count = await inbox.mark_all_read(db, user_id)
    return {"status": "ok", "count": count}


@router.post("/notifications/process-queue", response_model=QueueProcessResult)
async def process_notification_queue(
    batch_size: int | None = Query(None, ge=1, le=100),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """
    Send pending emails now instead of waiting for the scheduled run.
    """
    return await dispatcher.process_queue(batch_size)
