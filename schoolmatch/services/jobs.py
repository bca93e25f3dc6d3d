"""Job posting creation and the work that follows publication."""

from uuid import UUID

import httpx
import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from schoolmatch.core.concurrency import spawn_background, with_timeout
from schoolmatch.core.config import Settings, get_settings
from schoolmatch.core.database import insert_ignoring_conflicts
from schoolmatch.core.errors import (
    PrimaryWriteFailure,
    RecordNotFound,
    SchoolMatchError,
    TimeoutFailure,
    ValidationFailure,
)
from schoolmatch.models.job import EMPLOYMENT_TYPES, Job
from schoolmatch.models.job_candidate import JobCandidate
from schoolmatch.models.school import School
from schoolmatch.models.teacher_job_match import TeacherJobMatch
from schoolmatch.schemas.job import JobCreate
from schoolmatch.schemas.matching import RankedCandidate
from schoolmatch.services.matching import find_matches
from schoolmatch.services.notifications import candidate_match_intent, job_match_intent

logger = structlog.get_logger()


def validate_job(data: JobCreate) -> None:
    if data.job_type not in EMPLOYMENT_TYPES:
        raise ValidationFailure(
            f"Invalid employment type '{data.job_type}'. Expected one of: {', '.join(EMPLOYMENT_TYPES)}",
            operation="create_job",
        )
    if not data.title.strip():
        raise ValidationFailure("Job title is required", operation="create_job")
    if not data.subject.strip():
        raise ValidationFailure("Job subject is required", operation="create_job")


async def create_job(
    db: AsyncSession,
    school_id: UUID,
    data: JobCreate,
    session_factory: async_sessionmaker,
    dispatcher,
    settings: Settings | None = None,
) -> Job:
    """Validate and store a job, then start the post-publish work in the background.

    Only the insert decides the outcome; logo backfill and match fan-out
    failures are logged and never reach the caller.
    """
    settings = settings or get_settings()
    validate_job(data)

    school = await with_timeout(
        db.get(School, school_id),
        settings.STORE_READ_TIMEOUT_SECONDS,
        operation="load_school",
        primary=True,
    )
    if school is None:
        raise RecordNotFound("School not found", operation="create_job")

    job = Job(
        school_id=school_id,
        school_name=school.school_name,
        title=data.title.strip(),
        subject=data.subject.strip(),
        grade_level=data.grade_level,
        job_type=data.job_type,
        department=data.department,
        location=data.location or school.location,
        salary=data.salary,
        description=data.description,
        requirements=data.requirements,
        benefits=data.benefits,
        archetype_tags=data.archetype_tags,
    )
    db.add(job)
    try:
        await with_timeout(
            db.commit(),
            settings.JOB_CREATE_TIMEOUT_SECONDS,
            operation="create_job",
            primary=True,
        )
    except TimeoutFailure:
        await db.rollback()
        raise
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("job_create_failed", school_id=str(school_id), error=str(e))
        raise PrimaryWriteFailure("Could not publish the job. Please try again.", operation="create_job") from e

    logger.info("job_created", job_id=str(job.id), school_id=str(school_id), job_type=job.job_type)

    spawn_background(
        run_post_publish(job.id, session_factory, dispatcher, settings),
        name=f"post_publish:{job.id}",
    )
    return job


async def probe_logo(url: str, timeout: float) -> bool:
    """True when ``url`` answers a HEAD request without an error status."""
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        response = await client.head(url)
    return response.status_code < 400


async def backfill_logo(job_id: UUID, session_factory: async_sessionmaker, settings: Settings) -> bool:
    async with session_factory() as db:
        job = await db.get(Job, job_id)
        if job is None or job.school_logo:
            return False
        school = await db.get(School, job.school_id)
        if school is None or not school.logo_url:
            return False

        reachable = await with_timeout(
            probe_logo(school.logo_url, settings.LOGO_FETCH_TIMEOUT_SECONDS),
            settings.LOGO_FETCH_TIMEOUT_SECONDS,
            operation="logo_fetch",
        )
        if not reachable:
            logger.info("logo_unreachable", job_id=str(job_id), url=school.logo_url)
            return False

        job.school_logo = school.logo_url
        await with_timeout(
            db.commit(),
            settings.STORE_WRITE_TIMEOUT_SECONDS,
            operation="logo_backfill",
        )
    logger.info("logo_backfilled", job_id=str(job_id))
    return True


async def persist_matches(
    db: AsyncSession,
    job: Job,
    ranked: list[RankedCandidate],
    settings: Settings | None = None,
) -> list[RankedCandidate]:
    """Store both directions of each match. Returns the pairs that were new.

    Pairs that already exist, including ones written concurrently by
    ``recommend_jobs``, are left untouched.
    """
    settings = settings or get_settings()
    if not ranked:
        return []

    async def _write() -> list[RankedCandidate]:
        created = []
        for match in ranked:
            values = {
                "job_id": job.id,
                "teacher_id": match.teacher_id,
                "match_score": match.match_score,
                "match_reason": match.match_reason,
            }
            result = await db.execute(insert_ignoring_conflicts(db, JobCandidate, **values))
            if result.rowcount == 1:
                created.append(match)
            await db.execute(insert_ignoring_conflicts(db, TeacherJobMatch, **values))
        await db.commit()
        return created

    return await with_timeout(_write(), settings.STORE_WRITE_TIMEOUT_SECONDS, operation="persist_matches")


async def fan_out_matches(
    job_id: UUID,
    session_factory: async_sessionmaker,
    dispatcher,
    settings: Settings,
) -> list[RankedCandidate]:
    async with session_factory() as db:
        job = await db.get(Job, job_id)
        if job is None:
            logger.warning("match_fanout_job_missing", job_id=str(job_id))
            return []
        ranked = await find_matches(db, job, settings)
        created = await persist_matches(db, job, ranked, settings)

    for match in created:
        try:
            await dispatcher.notify(job_match_intent(match.teacher_id, job, match.match_score, match.match_reason))
        except (SchoolMatchError, SQLAlchemyError) as e:
            logger.warning("job_match_notification_failed", job_id=str(job_id), teacher_id=str(match.teacher_id), error=str(e))
    if created:
        try:
            await dispatcher.notify(candidate_match_intent(job))
        except (SchoolMatchError, SQLAlchemyError) as e:
            logger.warning("candidate_match_notification_failed", job_id=str(job_id), error=str(e))

    logger.info("match_fanout_done", job_id=str(job_id), ranked=len(ranked), created=len(created))
    return created


async def run_post_publish(
    job_id: UUID,
    session_factory: async_sessionmaker,
    dispatcher,
    settings: Settings,
) -> None:
    try:
        await backfill_logo(job_id, session_factory, settings)
    except (SchoolMatchError, SQLAlchemyError, httpx.HTTPError) as e:
        logger.warning("logo_backfill_failed", job_id=str(job_id), error=str(e))

    try:
        await with_timeout(
            fan_out_matches(job_id, session_factory, dispatcher, settings),
            settings.MATCH_FANOUT_TIMEOUT_SECONDS,
            operation="match_fanout",
        )
    except (SchoolMatchError, SQLAlchemyError) as e:
        logger.warning("match_fanout_failed", job_id=str(job_id), error=str(e))
