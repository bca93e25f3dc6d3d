from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class NotificationResponse(BaseModel):
    id: UUID
    type: str
    title: str
    message: str
    link_url: str | None = None
    data: dict | None = None
    read: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class PaginatedNotifications(BaseModel):
    items: list[NotificationResponse]
    total: int
    unread_count: int
    page: int
    page_size: int


class QueueProcessResult(BaseModel):
    processed: int
    succeeded: int
    failed: int


class DeliveryResult(BaseModel):
    success: bool
    error: str | None = None
    message_id: str | None = None
