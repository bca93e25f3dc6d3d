"""PostgreSQL change feed: row inserts become notification intents.

Triggers installed by the initial migration ``pg_notify`` a JSON document
``{"table": ..., "type": "INSERT" | "UPDATE", "record": {...}}`` on
EVENT_FEED_CHANNEL. Delivery is at least once; the dispatcher's debounce
absorbs the repeats.
"""

import json
from uuid import UUID

import asyncpg
import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from schoolmatch.core.concurrency import spawn_background, with_timeout
from schoolmatch.core.config import Settings, get_settings
from schoolmatch.models.application import Application
from schoolmatch.models.job import Job
from schoolmatch.models.teacher import Teacher
from schoolmatch.schemas.matching import NotificationIntent
from schoolmatch.services.notifications import (
    candidate_match_intent,
    job_match_intent,
    new_application_intent,
)

logger = structlog.get_logger()

# Status updates are announced by the status synchronizer, not the feed
EVENT_KINDS = {
    ("job_candidates", "INSERT"): "new_candidate_match",
    ("teacher_job_matches", "INSERT"): "new_job_match",
    ("applications", "INSERT"): "new_application",
}


class EventFeedListener:
    def __init__(self, dispatcher, session_factory: async_sessionmaker, settings: Settings | None = None):
        self.dispatcher = dispatcher
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self._connection: asyncpg.Connection | None = None

    async def start(self) -> None:
        if self._connection is not None:
            logger.info("event_feed_already_running")
            return
        dsn = self.settings.DATABASE_URL.replace("+asyncpg", "")
        self._connection = await asyncpg.connect(dsn)
        await self._connection.add_listener(self.settings.EVENT_FEED_CHANNEL, self._on_notification)
        logger.info("event_feed_started", channel=self.settings.EVENT_FEED_CHANNEL)

    async def stop(self) -> None:
        if self._connection is None:
            return
        try:
            await self._connection.remove_listener(self.settings.EVENT_FEED_CHANNEL, self._on_notification)
        finally:
            await self._connection.close()
            self._connection = None
        logger.info("event_feed_stopped")

    def _on_notification(self, connection, pid, channel, payload) -> None:
        spawn_background(self.handle_payload(payload), name=f"event_feed:{channel}")

    async def handle_payload(self, payload: str) -> NotificationIntent | None:
        try:
            event = json.loads(payload)
        except ValueError:
            logger.warning("event_feed_bad_payload", payload=payload[:200])
            return None
        if not isinstance(event, dict):
            logger.warning("event_feed_bad_payload", payload=payload[:200])
            return None
        return await self.handle_event(event)

    async def handle_event(self, event: dict) -> NotificationIntent | None:
        """Turn one change event into an intent and dispatch it."""
        table = event.get("table")
        kind = EVENT_KINDS.get((table, str(event.get("type", "")).upper()))
        if kind is None:
            logger.debug("event_feed_ignored", table=table, type=event.get("type"))
            return None

        record = event.get("record") or {}
        intent = await with_timeout(
            self._build_intent(kind, record),
            self.settings.STORE_READ_TIMEOUT_SECONDS,
            operation="build_event_intent",
        )
        if intent is None:
            logger.warning("event_feed_record_missing", table=table, record_id=record.get("id"))
            return None

        await self.dispatcher.notify(intent)
        return intent

    async def _build_intent(self, kind: str, record: dict) -> NotificationIntent | None:
        async with self.session_factory() as db:
            if kind == "new_application":
                application = await db.get(Application, UUID(str(record["id"])))
                if application is None:
                    return None
                job = await db.get(Job, application.job_id)
                teacher = await db.get(Teacher, application.teacher_id)
                if job is None or teacher is None:
                    return None
                return new_application_intent(application, job, teacher)

            job = await db.get(Job, UUID(str(record["job_id"])))
            if job is None:
                return None
            if kind == "new_candidate_match":
                return candidate_match_intent(job)
            return job_match_intent(
                UUID(str(record["teacher_id"])),
                job,
                record.get("match_score") or 0,
                record.get("match_reason"),
            )
