"""Candidate pipeline status changes.

A status change has three effects, applied in order:

1. the match record write (primary: failure fails the call),
2. mirroring the status onto the teacher's application (best effort),
3. a notification to the teacher (background, best effort).
"""

import asyncio
from collections.abc import Iterable
from datetime import datetime, timezone
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from schoolmatch.core.concurrency import spawn_background, with_timeout
from schoolmatch.core.config import Settings, get_settings
from schoolmatch.core.errors import (
    PrimaryWriteFailure,
    RecordNotFound,
    SchoolMatchError,
    TimeoutFailure,
    ValidationFailure,
)
from schoolmatch.models.application import Application
from schoolmatch.models.job import Job
from schoolmatch.models.job_candidate import MATCH_STATUSES, JobCandidate
from schoolmatch.models.teacher import Teacher
from schoolmatch.schemas.candidate import BulkStatusFailure, BulkStatusResult
from schoolmatch.schemas.matching import NotificationIntent
from schoolmatch.services.aggregation import APPLICATION_ONLY_REASON, display_status_for

logger = structlog.get_logger()

STATUS_TO_APPLICATION_STATUS = {
    "new": "pending",
    "reviewed": "under_review",
    "contacted": "under_review",
    "shortlisted": "under_review",
    "hired": "accepted",
    "hidden": "rejected",
}

# Status wording used in teacher emails; None means the change is not announced
STATUS_EMAIL_LABELS = {
    "new": None,
    "reviewed": "reviewed",
    "contacted": "contacted",
    "shortlisted": "shortlisted",
    "hired": "hired",
    "hidden": "rejected",
}


def validate_status(status: str) -> None:
    if status not in MATCH_STATUSES:
        raise ValidationFailure(
            f"Invalid status '{status}'. Expected one of: {', '.join(MATCH_STATUSES)}",
            operation="set_status",
        )


async def find_application(db: AsyncSession, job_id: UUID, teacher_id: UUID) -> Application | None:
    result = await db.execute(
        select(Application)
        .where(Application.job_id == job_id, Application.teacher_id == teacher_id)
        .order_by(Application.applied_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


class StatusSynchronizer:
    def __init__(self, session_factory: async_sessionmaker, dispatcher, settings: Settings | None = None):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()

    async def set_status(self, candidate_id: UUID, new_status: str, notes: str | None = None) -> JobCandidate:
        """Move a candidate to ``new_status``. Any status may follow any other.

        ``candidate_id`` may also be the id of an application that has no
        match record yet; the match record is created from it first.
        """
        validate_status(new_status)
        record, _ = await self._apply(candidate_id, new_status, notes)
        return record

    async def bulk_set_status(
        self,
        candidate_ids: Iterable[UUID],
        new_status: str,
        notes: str | None = None,
    ) -> BulkStatusResult:
        """Apply ``set_status`` to each id independently.

        A failure for one id never rolls back or blocks the others.
        """
        validate_status(new_status)
        semaphore = asyncio.Semaphore(max(1, self.settings.BULK_STATUS_CONCURRENCY))

        async def run(candidate_id: UUID):
            async with semaphore:
                try:
                    _, synced = await self._apply(candidate_id, new_status, notes)
                except SchoolMatchError as e:
                    logger.warning("bulk_status_item_failed", candidate_id=str(candidate_id), error=e.message)
                    return candidate_id, e, False
                return candidate_id, None, synced

        outcomes = await asyncio.gather(*(run(cid) for cid in dict.fromkeys(candidate_ids)))

        result = BulkStatusResult()
        for candidate_id, error, synced in outcomes:
            if error is not None:
                result.failed.append(BulkStatusFailure(candidate_id=str(candidate_id), error=error.message))
                continue
            result.updated.append(str(candidate_id))
            if not synced:
                result.application_sync_failed.append(str(candidate_id))

        logger.info(
            "bulk_status_updated",
            status=new_status,
            updated=len(result.updated),
            failed=len(result.failed),
            application_sync_failed=len(result.application_sync_failed),
        )
        return result

    async def _apply(self, candidate_id: UUID, new_status: str, notes: str | None) -> tuple[JobCandidate, bool]:
        async with self.session_factory() as db:
            record = await self._load_or_materialize(db, candidate_id)
            record.status = new_status
            if notes is not None:
                record.school_notes = notes
            record.updated_at = datetime.now(timezone.utc)

            try:
                await with_timeout(
                    db.commit(),
                    self.settings.STORE_WRITE_TIMEOUT_SECONDS,
                    operation="update_candidate_status",
                    primary=True,
                )
            except TimeoutFailure:
                await db.rollback()
                raise
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error("candidate_status_write_failed", candidate_id=str(candidate_id), error=str(e))
                raise PrimaryWriteFailure(
                    "Could not save the candidate status. Please try again.",
                    operation="set_status",
                ) from e

            # Keep the committed state even if the application sync rolls back
            db.expunge(record)
            synced = await self._sync_application(db, record, new_status)

        logger.info(
            "candidate_status_updated",
            candidate_id=str(record.id),
            job_id=str(record.job_id),
            teacher_id=str(record.teacher_id),
            status=new_status,
            application_synced=synced,
        )
        spawn_background(
            self._emit_status_notification(record.job_id, record.teacher_id, new_status),
            name=f"status_notification:{record.id}",
        )
        return record, synced

    async def _load_or_materialize(self, db: AsyncSession, candidate_id: UUID) -> JobCandidate:
        try:
            record = await with_timeout(
                db.get(JobCandidate, candidate_id),
                self.settings.STORE_READ_TIMEOUT_SECONDS,
                operation="load_candidate",
                primary=True,
            )
            if record is not None:
                return record

            application = await with_timeout(
                db.get(Application, candidate_id),
                self.settings.STORE_READ_TIMEOUT_SECONDS,
                operation="load_application",
                primary=True,
            )
            if application is None:
                raise RecordNotFound("Candidate not found", operation="set_status")

            existing = await with_timeout(
                db.execute(
                    select(JobCandidate).where(
                        JobCandidate.job_id == application.job_id,
                        JobCandidate.teacher_id == application.teacher_id,
                    )
                ),
                self.settings.STORE_READ_TIMEOUT_SECONDS,
                operation="load_candidate_for_application",
                primary=True,
            )
        except SQLAlchemyError as e:
            raise PrimaryWriteFailure("Could not load the candidate. Please try again.", operation="set_status") from e

        record = existing.scalar_one_or_none()
        if record is not None:
            return record

        record = JobCandidate(
            job_id=application.job_id,
            teacher_id=application.teacher_id,
            match_score=self.settings.APPLICATION_ONLY_SCORE,
            match_reason=APPLICATION_ONLY_REASON,
            status=display_status_for(application.status),
        )
        db.add(record)
        logger.info(
            "candidate_materialized",
            application_id=str(application.id),
            job_id=str(application.job_id),
            teacher_id=str(application.teacher_id),
        )
        return record

    async def _sync_application(self, db: AsyncSession, record: JobCandidate, new_status: str) -> bool:
        """Mirror the mapped status onto the application, if there is one.

        Returns False when the lookup or write failed. Never raises.
        """
        target = STATUS_TO_APPLICATION_STATUS[new_status]
        try:
            application = await with_timeout(
                find_application(db, record.job_id, record.teacher_id),
                self.settings.STORE_READ_TIMEOUT_SECONDS,
                operation="find_application",
            )
            if application is None:
                return True
            if application.status != target:
                application.status = target
                await with_timeout(
                    db.commit(),
                    self.settings.STORE_WRITE_TIMEOUT_SECONDS,
                    operation="sync_application_status",
                )
        except Exception as e:
            await db.rollback()
            logger.warning(
                "application_sync_failed",
                candidate_id=str(record.id),
                job_id=str(record.job_id),
                teacher_id=str(record.teacher_id),
                error=str(e),
            )
            return False
        return True

    async def _emit_status_notification(self, job_id: UUID, teacher_id: UUID, new_status: str) -> None:
        label = STATUS_EMAIL_LABELS[new_status]
        if label is None:
            return

        async with self.session_factory() as db:
            job = await with_timeout(
                db.get(Job, job_id),
                self.settings.STORE_READ_TIMEOUT_SECONDS,
                operation="load_job",
            )
            teacher = await with_timeout(
                db.get(Teacher, teacher_id),
                self.settings.STORE_READ_TIMEOUT_SECONDS,
                operation="load_teacher",
            )
        if job is None or teacher is None:
            logger.warning("status_notification_skipped", job_id=str(job_id), teacher_id=str(teacher_id))
            return

        intent = NotificationIntent(
            kind="application_status",
            recipient_id=teacher_id,
            payload={
                "job_id": str(job_id),
                "teacher_id": str(teacher_id),
                "job_title": job.title,
                "school_name": job.school_name,
                "status": label,
            },
        )
        await self.dispatcher.notify(intent)
