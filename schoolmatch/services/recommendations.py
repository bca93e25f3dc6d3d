"""Job recommendations for a teacher, scored with the weighted scorer."""

from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from schoolmatch.core.concurrency import with_timeout
from schoolmatch.core.config import Settings, get_settings
from schoolmatch.core.errors import RecordNotFound
from schoolmatch.models.job import Job
from schoolmatch.models.teacher import Teacher
from schoolmatch.models.teacher_job_match import TeacherJobMatch
from schoolmatch.schemas.matching import JobMatchUpdate, JobRecommendation, ScoreBreakdownResponse
from schoolmatch.services import scoring

logger = structlog.get_logger()


async def _get_teacher(db: AsyncSession, teacher_id: UUID, settings: Settings) -> Teacher:
    teacher = await with_timeout(
        db.get(Teacher, teacher_id),
        settings.STORE_READ_TIMEOUT_SECONDS,
        operation="load_teacher",
    )
    if teacher is None:
        raise RecordNotFound("Teacher not found", operation="load_teacher")
    return teacher


async def recommend_jobs(
    db: AsyncSession,
    teacher_id: UUID,
    limit: int = 20,
    settings: Settings | None = None,
) -> list[JobRecommendation]:
    """Score every active job for the teacher and store the results.

    Existing matches keep their favourite/hidden flags; hidden ones are left
    out of the returned list.
    """
    settings = settings or get_settings()
    teacher = await _get_teacher(db, teacher_id, settings)

    jobs_result = await with_timeout(
        db.execute(select(Job).where(Job.is_active.is_(True)).order_by(Job.posted_at.desc())),
        settings.STORE_READ_TIMEOUT_SECONDS,
        operation="load_active_jobs",
    )
    jobs = jobs_result.scalars().all()

    existing_result = await with_timeout(
        db.execute(select(TeacherJobMatch).where(TeacherJobMatch.teacher_id == teacher_id)),
        settings.STORE_READ_TIMEOUT_SECONDS,
        operation="load_job_matches",
    )
    existing = {m.job_id: m for m in existing_result.scalars().all()}

    scored = []
    for job in jobs:
        result = scoring.score(teacher, job)
        reason = ", ".join(result.reasons) or None
        match = existing.get(job.id)
        if match is None:
            match = TeacherJobMatch(
                teacher_id=teacher_id,
                job_id=job.id,
                match_score=result.score,
                match_reason=reason,
            )
            db.add(match)
        else:
            match.match_score = result.score
            match.match_reason = reason
        scored.append((match, job))

    await with_timeout(
        db.flush(),
        settings.STORE_WRITE_TIMEOUT_SECONDS,
        operation="store_job_matches",
    )

    visible = [(m, j) for m, j in scored if not m.is_hidden]
    visible.sort(key=lambda pair: pair[0].match_score, reverse=True)

    logger.info(
        "recommend_jobs",
        teacher_id=str(teacher_id),
        scored=len(scored),
        returned=min(len(visible), limit),
    )

    return [
        JobRecommendation(
            match_id=str(m.id),
            job_id=str(j.id),
            title=j.title,
            school_name=j.school_name,
            location=j.location,
            subject=j.subject,
            grade_level=j.grade_level,
            match_score=m.match_score,
            match_reason=m.match_reason,
            is_favorited=bool(m.is_favorited),
        )
        for m, j in visible[:limit]
    ]


async def score_teacher_for_job(
    db: AsyncSession,
    job_id: UUID,
    teacher_id: UUID,
    settings: Settings | None = None,
) -> ScoreBreakdownResponse:
    settings = settings or get_settings()
    job = await with_timeout(
        db.get(Job, job_id),
        settings.STORE_READ_TIMEOUT_SECONDS,
        operation="load_job",
    )
    if job is None:
        raise RecordNotFound("Job not found", operation="load_job")
    teacher = await _get_teacher(db, teacher_id, settings)

    result = scoring.score(teacher, job)
    return ScoreBreakdownResponse(
        job_id=str(job_id),
        teacher_id=str(teacher_id),
        **result.model_dump(),
    )


async def update_job_match(
    db: AsyncSession,
    teacher_id: UUID,
    match_id: UUID,
    data: JobMatchUpdate,
    settings: Settings | None = None,
) -> TeacherJobMatch:
    """Favourite or hide a recommended job."""
    settings = settings or get_settings()
    result = await with_timeout(
        db.execute(
            select(TeacherJobMatch).where(
                TeacherJobMatch.id == match_id,
                TeacherJobMatch.teacher_id == teacher_id,
            )
        ),
        settings.STORE_READ_TIMEOUT_SECONDS,
        operation="load_job_match",
    )
    match = result.scalar_one_or_none()
    if match is None:
        raise RecordNotFound("Job match not found", operation="update_job_match")

    if data.is_favorited is not None:
        match.is_favorited = data.is_favorited
    if data.is_hidden is not None:
        match.is_hidden = data.is_hidden
    await with_timeout(
        db.flush(),
        settings.STORE_WRITE_TIMEOUT_SECONDS,
        operation="update_job_match",
        primary=True,
    )
    return match
