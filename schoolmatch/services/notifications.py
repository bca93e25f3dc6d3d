"""Notification dispatch: debounce, preferences, email queue.

``notify`` runs when something happens. It suppresses repeats of the same
event inside the debounce window, writes the in-app notification and queues
an email row. ``process_queue`` runs on a schedule. It claims pending rows,
checks the recipient's email preference, renders the email from current
data and hands it to the delivery channel.

Email rows move pending -> processing -> sent | failed, or to cancelled
when the recipient opted out or there is nothing left to announce. Failed
rows are never picked up again. A row left in processing past the claim
timeout, because its worker died, goes back to pending.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from schoolmatch.core.concurrency import with_timeout
from schoolmatch.core.config import Settings, get_settings
from schoolmatch.core.errors import SchoolMatchError, SecondaryEffectFailure, TimeoutFailure, ValidationFailure
from schoolmatch.models.application import Application
from schoolmatch.models.email_notification import EmailNotification
from schoolmatch.models.job import Job
from schoolmatch.models.job_candidate import JobCandidate
from schoolmatch.models.notification import Notification
from schoolmatch.models.notification_preference import NotificationPreference
from schoolmatch.models.school import School
from schoolmatch.models.teacher import Teacher
from schoolmatch.models.teacher_job_match import TeacherJobMatch
from schoolmatch.models.user import User
from schoolmatch.schemas.matching import NotificationIntent
from schoolmatch.schemas.notification import DeliveryResult
from schoolmatch.services.email import render
from schoolmatch.services.pipeline import STATUS_EMAIL_LABELS

logger = structlog.get_logger()

SCHOOL_NOTIFICATIONS = ("new_candidate_match", "new_application")
TEACHER_NOTIFICATIONS = ("new_job_match", "application_status")
NOTIFICATION_TYPES = SCHOOL_NOTIFICATIONS + TEACHER_NOTIFICATIONS

DIGEST_MAX_JOBS = 20


class DebounceCache:
    """Last-fired time per key; repeats inside ``window`` seconds are dropped.

    Read-check-write without a lock. Two racing events for one key can both
    fire, which costs a duplicate email and nothing else.
    """

    def __init__(self, window: float, clock: Callable[[], float] = time.monotonic):
        self.window = window
        self._clock = clock
        self._fired: dict[str, float] = {}

    def should_fire(self, key: str) -> bool:
        now = self._clock()
        last = self._fired.get(key)
        if last is not None and now - last < self.window:
            return False
        self._evict(now)
        self._fired[key] = now
        return True

    def release(self, key: str) -> None:
        """Forget ``key`` so the next event for it fires again."""
        self._fired.pop(key, None)

    def _evict(self, now: float) -> None:
        for key in [k for k, fired in self._fired.items() if now - fired >= self.window]:
            del self._fired[key]

    def __len__(self) -> int:
        return len(self._fired)


def debounce_key(intent: NotificationIntent) -> str:
    payload = intent.payload
    if intent.kind == "new_candidate_match":
        return f"candidate-match:{intent.recipient_id}:{payload.get('job_id')}"
    if intent.kind == "new_job_match":
        return f"job-match:{intent.recipient_id}"
    if intent.kind == "application_status":
        return f"application-status:{intent.recipient_id}:{payload.get('job_id')}"
    if intent.kind == "new_application":
        return f"new-application:{intent.recipient_id}:{payload.get('application_id')}"
    return f"{intent.kind}:{intent.recipient_id}"


def candidate_match_intent(job: Job) -> NotificationIntent:
    return NotificationIntent(
        kind="new_candidate_match",
        recipient_id=job.school_id,
        payload={
            "job_id": str(job.id),
            "school_id": str(job.school_id),
            "job_title": job.title,
            "school_name": job.school_name,
        },
    )


def job_match_intent(teacher_id: UUID, job: Job, match_score: int, match_reason: str | None) -> NotificationIntent:
    return NotificationIntent(
        kind="new_job_match",
        recipient_id=teacher_id,
        payload={
            "teacher_id": str(teacher_id),
            "job_id": str(job.id),
            "job_title": job.title,
            "school_name": job.school_name,
            "match_score": match_score,
            "match_reason": match_reason,
        },
    )


def new_application_intent(application: Application, job: Job, teacher: Teacher) -> NotificationIntent:
    return NotificationIntent(
        kind="new_application",
        recipient_id=job.school_id,
        payload={
            "application_id": str(application.id),
            "job_id": str(job.id),
            "teacher_id": str(teacher.id),
            "school_id": str(job.school_id),
            "job_title": job.title,
            "teacher_name": teacher.full_name,
        },
    )


def _in_app_content(intent: NotificationIntent, settings: Settings) -> tuple[str, str, str]:
    payload = intent.payload
    job_title = payload.get("job_title") or "your job posting"
    school_name = payload.get("school_name") or "A school"
    if intent.kind == "new_candidate_match":
        return (
            "New candidate matches",
            f"New teachers match {job_title}.",
            f"{settings.FRONTEND_URL}/school/dashboard",
        )
    if intent.kind == "new_job_match":
        return (
            "New job match",
            f"{job_title} at {school_name} matches your profile.",
            f"{settings.FRONTEND_URL}/jobs/{payload.get('job_id')}",
        )
    if intent.kind == "application_status":
        return (
            "Application update",
            f"Your application for {job_title} at {school_name} was {payload.get('status')}.",
            f"{settings.FRONTEND_URL}/teacher/dashboard",
        )
    return (
        "New application",
        f"{payload.get('teacher_name') or 'A teacher'} applied for {job_title}.",
        f"{settings.FRONTEND_URL}/school/dashboard",
    )


@dataclass
class Recipient:
    user_id: UUID
    email: str
    name: str


async def get_preferences(db: AsyncSession, user_id: UUID | None, notification_type: str) -> tuple[bool, bool]:
    """(email_enabled, in_app_enabled); no stored preference means both on."""
    if user_id is None:
        return True, True
    result = await db.execute(
        select(NotificationPreference).where(
            NotificationPreference.user_id == user_id,
            NotificationPreference.notification_type == notification_type,
        )
    )
    preference = result.scalar_one_or_none()
    if preference is None:
        return True, True
    return preference.email_enabled, preference.in_app_enabled


class NotificationDispatcher:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        channel,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_factory = session_factory
        self.channel = channel
        self.settings = settings or get_settings()
        self.debounce = DebounceCache(self.settings.NOTIFICATION_DEBOUNCE_SECONDS, clock)

    async def notify(self, intent: NotificationIntent) -> bool:
        """Record an in-app notification and queue an email for ``intent``.

        Returns False when the event was debounced or has no recipient. The
        debounce key only stays recorded once the rows are committed.
        """
        if intent.kind not in NOTIFICATION_TYPES:
            raise ValidationFailure(f"Unknown notification type '{intent.kind}'", operation="notify")

        key = debounce_key(intent)
        if not self.debounce.should_fire(key):
            logger.info("notification_debounced", kind=intent.kind, key=key)
            return False

        try:
            enqueued = await self._enqueue(intent, key)
        except Exception:
            self.debounce.release(key)
            raise
        if not enqueued:
            self.debounce.release(key)
        return enqueued

    async def _enqueue(self, intent: NotificationIntent, key: str) -> bool:
        async with self.session_factory() as db:
            recipient = await with_timeout(
                self._resolve_recipient(db, intent),
                self.settings.STORE_READ_TIMEOUT_SECONDS,
                operation="resolve_recipient",
            )
            if recipient is None:
                logger.warning("notification_recipient_missing", kind=intent.kind, recipient_id=str(intent.recipient_id))
                return False

            _, in_app_enabled = await with_timeout(
                get_preferences(db, recipient.user_id, intent.kind),
                self.settings.STORE_READ_TIMEOUT_SECONDS,
                operation="load_preferences",
            )
            if in_app_enabled:
                title, message, link_url = _in_app_content(intent, self.settings)
                db.add(
                    Notification(
                        user_id=recipient.user_id,
                        type=intent.kind,
                        title=title,
                        message=message,
                        link_url=link_url,
                        data=intent.payload,
                    )
                )

            if recipient.email:
                db.add(
                    EmailNotification(
                        type=intent.kind,
                        recipient_user_id=recipient.user_id,
                        recipient_email=recipient.email,
                        recipient_name=recipient.name,
                        template_data=intent.payload,
                        status="pending",
                    )
                )

            await with_timeout(
                db.commit(),
                self.settings.STORE_WRITE_TIMEOUT_SECONDS,
                operation="enqueue_notification",
            )

        logger.info(
            "notification_enqueued",
            kind=intent.kind,
            key=key,
            in_app=in_app_enabled,
            email=bool(recipient.email),
        )
        return True

    async def _resolve_recipient(self, db: AsyncSession, intent: NotificationIntent) -> Recipient | None:
        if intent.kind in SCHOOL_NOTIFICATIONS:
            school = await db.get(School, intent.recipient_id)
            if school is None:
                return None
            user = await db.get(User, school.user_id)
            return Recipient(user_id=school.user_id, email=user.email if user else "", name=school.school_name)

        teacher = await db.get(Teacher, intent.recipient_id)
        if teacher is None:
            return None
        user = await db.get(User, teacher.user_id)
        email = teacher.email or (user.email if user else "")
        return Recipient(user_id=teacher.user_id, email=email, name=teacher.full_name)

    async def process_queue(self, batch_size: int | None = None) -> dict[str, int]:
        """Send up to ``batch_size`` pending emails.

        Each row is claimed with a conditional update, so overlapping runs
        never send the same row twice. An error on one row marks that row
        failed and the batch moves on. Rows cancelled along the way are not
        counted as processed.
        """
        batch_size = batch_size or self.settings.NOTIFICATION_BATCH_SIZE
        counts = {"processed": 0, "succeeded": 0, "failed": 0}

        await self.release_stale_claims()

        async with self.session_factory() as db:
            result = await with_timeout(
                db.execute(
                    select(EmailNotification.id)
                    .where(EmailNotification.status == "pending")
                    .order_by(EmailNotification.created_at)
                    .limit(batch_size)
                ),
                self.settings.STORE_READ_TIMEOUT_SECONDS,
                operation="load_pending_notifications",
            )
            pending_ids = list(result.scalars().all())

        for notification_id in pending_ids:
            try:
                outcome = await self._process_one(notification_id)
            except Exception as e:
                error = str(e) or e.__class__.__name__
                logger.error("notification_process_failed", notification_id=str(notification_id), error=error)
                outcome = await self._fail_claimed(notification_id, error)
            if outcome is None:
                continue
            counts["processed"] += 1
            counts["succeeded" if outcome == "sent" else "failed"] += 1

        if pending_ids:
            logger.info("notification_queue_processed", pending=len(pending_ids), **counts)
        return counts

    async def release_stale_claims(self) -> int:
        """Put rows stuck in ``processing`` past the claim timeout back to pending."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.settings.NOTIFICATION_CLAIM_TIMEOUT_SECONDS)
        async with self.session_factory() as db:
            result = await with_timeout(
                db.execute(
                    update(EmailNotification)
                    .where(EmailNotification.status == "processing", EmailNotification.claimed_at < cutoff)
                    .values(status="pending", claimed_at=None)
                ),
                self.settings.STORE_WRITE_TIMEOUT_SECONDS,
                operation="release_stale_claims",
            )
            await db.commit()
        if result.rowcount:
            logger.warning("notification_claims_released", count=result.rowcount)
        return result.rowcount

    async def _fail_claimed(self, notification_id: UUID, error: str) -> str | None:
        """Mark a row we still hold in ``processing`` as failed.

        A row whose claim never committed is still pending and is left alone.
        """
        try:
            async with self.session_factory() as db:
                result = await with_timeout(
                    db.execute(
                        update(EmailNotification)
                        .where(EmailNotification.id == notification_id, EmailNotification.status == "processing")
                        .values(status="failed", error_message=error)
                    ),
                    self.settings.STORE_WRITE_TIMEOUT_SECONDS,
                    operation="update_notification_status",
                )
                await db.commit()
        except (SchoolMatchError, SQLAlchemyError) as e:
            # Left in processing; release_stale_claims returns it to pending later
            logger.error("notification_fail_mark_failed", notification_id=str(notification_id), error=str(e))
            return None
        return "failed" if result.rowcount == 1 else None

    async def _process_one(self, notification_id: UUID) -> str | None:
        async with self.session_factory() as db:
            claim = await with_timeout(
                db.execute(
                    update(EmailNotification)
                    .where(EmailNotification.id == notification_id, EmailNotification.status == "pending")
                    .values(status="processing", claimed_at=datetime.now(timezone.utc))
                ),
                self.settings.STORE_WRITE_TIMEOUT_SECONDS,
                operation="claim_notification",
            )
            await db.commit()
            if claim.rowcount != 1:
                logger.info("notification_already_claimed", notification_id=str(notification_id))
                return None

            notification = await db.get(EmailNotification, notification_id)
            kind = notification.type
            to = notification.recipient_email

            email_enabled = await self._email_allowed(db, notification)
            rendered = await self._build_email(db, notification) if email_enabled else None

            if rendered is None:
                logger.info(
                    "notification_cancelled",
                    notification_id=str(notification_id),
                    kind=kind,
                    reason="opted_out" if not email_enabled else "nothing_to_send",
                )
                await self._mark(db, notification_id, "cancelled")
                return None

            subject, html = rendered
            try:
                result = await with_timeout(
                    self.channel.send(to, subject, html),
                    self.settings.NOTIFICATION_SEND_TIMEOUT_SECONDS,
                    operation="send_email",
                )
            except TimeoutFailure as e:
                result = DeliveryResult(success=False, error=e.message)
            except Exception as e:
                logger.error("notification_channel_error", notification_id=str(notification_id), error=str(e))
                result = DeliveryResult(success=False, error=str(e) or e.__class__.__name__)

            if result.success:
                await self._mark(db, notification_id, "sent", subject=subject)
                logger.info("notification_sent", notification_id=str(notification_id), kind=kind)
                return "sent"

            await self._mark(db, notification_id, "failed", error=result.error or "Unknown delivery error", subject=subject)
            logger.warning("notification_send_failed", notification_id=str(notification_id), kind=kind, error=result.error)
            return "failed"

    async def _mark(
        self,
        db: AsyncSession,
        notification_id: UUID,
        status: str,
        error: str | None = None,
        subject: str | None = None,
    ) -> None:
        values = {"status": status, "error_message": error}
        if status == "sent":
            values["sent_at"] = datetime.now(timezone.utc)
        if subject is not None:
            values["subject"] = subject
        await with_timeout(
            db.execute(update(EmailNotification).where(EmailNotification.id == notification_id).values(**values)),
            self.settings.STORE_WRITE_TIMEOUT_SECONDS,
            operation="update_notification_status",
        )
        await db.commit()

    async def _email_allowed(self, db: AsyncSession, notification: EmailNotification) -> bool:
        user_id = notification.recipient_user_id
        if user_id is None:
            result = await db.execute(select(User.id).where(User.email == notification.recipient_email))
            user_id = result.scalar_one_or_none()
        # Unknown addresses have no preferences to honour
        email_enabled, _ = await get_preferences(db, user_id, notification.type)
        return email_enabled

    def _links(self) -> dict[str, str]:
        base = self.settings.FRONTEND_URL
        return {
            "preferences_url": f"{base}/settings?tab=email",
            "unsubscribe_url": f"{base}/settings?tab=email&action=unsubscribe",
        }

    async def _build_email(self, db: AsyncSession, notification: EmailNotification) -> tuple[str, str] | None:
        """(subject, html) from current data, or None when nothing is left to say."""
        builders = {
            "new_candidate_match": self._candidate_match_email,
            "new_job_match": self._job_match_email,
            "application_status": self._application_status_email,
            "new_application": self._new_application_email,
        }
        builder = builders.get(notification.type)
        if builder is None:
            raise SecondaryEffectFailure(f"Unknown notification type: {notification.type}", operation="process_queue")
        return await builder(db, notification, notification.template_data or {})

    async def _candidate_match_email(self, db, notification, data) -> tuple[str, str]:
        job_id = UUID(data["job_id"])
        # Count at send time so debounced events are included
        count = await db.scalar(
            select(func.count(JobCandidate.id)).where(JobCandidate.job_id == job_id, JobCandidate.status == "new")
        )
        count = max(count or 0, 1)
        job_title = data.get("job_title") or "your job posting"

        html = render(
            "email/new_candidate_match.html",
            school_name=notification.recipient_name or data.get("school_name") or "School",
            job_title=job_title,
            candidate_count=count,
            dashboard_url=f"{self.settings.FRONTEND_URL}/school/dashboard",
            **self._links(),
        )
        return f"{count} New Candidate{'s' if count > 1 else ''} for {job_title}", html

    async def _job_match_email(self, db, notification, data) -> tuple[str, str] | None:
        teacher_id = UUID(data["teacher_id"])
        since = datetime.now(timezone.utc) - timedelta(hours=self.settings.JOB_MATCH_DIGEST_HOURS)
        result = await db.execute(
            select(TeacherJobMatch, Job)
            .join(Job, TeacherJobMatch.job_id == Job.id)
            .where(
                TeacherJobMatch.teacher_id == teacher_id,
                TeacherJobMatch.is_hidden.is_(False),
                TeacherJobMatch.created_at >= since,
            )
            .order_by(TeacherJobMatch.match_score.desc())
            .limit(DIGEST_MAX_JOBS)
        )
        rows = result.all()
        if not rows:
            return None

        dashboard_url = f"{self.settings.FRONTEND_URL}/teacher/dashboard"
        jobs = [
            {
                "title": job.title,
                "school_name": job.school_name,
                "location": job.location,
                "match_score": match.match_score,
                "match_reason": match.match_reason,
                "job_url": f"{self.settings.FRONTEND_URL}/jobs/{job.id}",
            }
            for match, job in rows
        ]
        teacher_name = notification.recipient_name or "Teacher"

        if len(jobs) == 1:
            job = jobs[0]
            html = render("email/new_job_match.html", teacher_name=teacher_name, job=job, **self._links())
            return f"New Job Match: {job['title']} at {job['school_name']}", html

        html = render(
            "email/job_match_digest.html",
            teacher_name=teacher_name,
            jobs=jobs,
            dashboard_url=dashboard_url,
            **self._links(),
        )
        return f"{len(jobs)} New Job Matches for You", html

    async def _application_status_email(self, db, notification, data) -> tuple[str, str] | None:
        label = data.get("status")
        if data.get("job_id") and data.get("teacher_id"):
            result = await db.execute(
                select(JobCandidate.status).where(
                    JobCandidate.job_id == UUID(data["job_id"]),
                    JobCandidate.teacher_id == UUID(data["teacher_id"]),
                )
            )
            current = result.scalar_one_or_none()
            if current is not None:
                label = STATUS_EMAIL_LABELS.get(current)
        if not label:
            return None

        job_title = data.get("job_title") or "Job"
        school_name = data.get("school_name") or "School"
        html = render(
            "email/application_status.html",
            teacher_name=notification.recipient_name or "Teacher",
            job_title=job_title,
            school_name=school_name,
            status=label,
            message=data.get("message"),
            dashboard_url=f"{self.settings.FRONTEND_URL}/teacher/dashboard",
            **self._links(),
        )
        return f"Application Update: {job_title} at {school_name}", html

    async def _new_application_email(self, db, notification, data) -> tuple[str, str]:
        application = await db.get(Application, UUID(data["application_id"]))
        if application is None:
            raise SecondaryEffectFailure("Application no longer exists", operation="process_queue")
        job = await db.get(Job, application.job_id)
        teacher = await db.get(Teacher, application.teacher_id)
        if job is None or teacher is None:
            raise SecondaryEffectFailure("Application is missing its job or teacher", operation="process_queue")

        match_score = await db.scalar(
            select(JobCandidate.match_score).where(
                JobCandidate.job_id == job.id,
                JobCandidate.teacher_id == teacher.id,
            )
        )
        html = render(
            "email/new_application.html",
            school_name=notification.recipient_name or job.school_name or "School",
            teacher_name=teacher.full_name,
            job_title=job.title,
            teacher_email=teacher.email,
            years_experience=teacher.years_experience,
            subjects=teacher.subjects or [],
            match_score=match_score,
            cover_letter=application.cover_letter,
            dashboard_url=f"{self.settings.FRONTEND_URL}/school/dashboard",
            **self._links(),
        )
        return f"New Application: {teacher.full_name} for {job.title}", html
