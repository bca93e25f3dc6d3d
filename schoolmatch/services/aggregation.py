"""Merged candidate list for a school's jobs.

Two sources describe candidates for a job: match records (``job_candidates``,
read through the ``candidate_matches`` view) and raw applications. They
overlap and are allowed to diverge, so they are merged at read time: a match
record always wins over an application for the same (job, teacher) pair,
and applications without a match are shown as low-scored synthesized rows.
"""

from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from uuid import UUID

import structlog
from sqlalchemy import and_, select
from sqlalchemy.exc import OperationalError, ProgrammingError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from schoolmatch.core.concurrency import with_timeout
from schoolmatch.core.config import Settings, get_settings
from schoolmatch.core.errors import RecordNotFound, SchoolMatchError
from schoolmatch.models.application import Application
from schoolmatch.models.job import Job
from schoolmatch.models.job_candidate import JobCandidate
from schoolmatch.models.school import School
from schoolmatch.models.teacher import Teacher
from schoolmatch.models.views import candidate_matches
from schoolmatch.schemas.candidate import CandidateFilters, CandidateView

logger = structlog.get_logger()

APPLICATION_ONLY_REASON = "Application submitted"

# How an application status is shown in the candidate pipeline
APPLICATION_DISPLAY_STATUS = {
    "pending": "new",
    "under_review": "reviewed",
    "accepted": "shortlisted",
    "rejected": "hidden",
}

Key = tuple[str, str]


def display_status_for(application_status: str | None) -> str:
    return APPLICATION_DISPLAY_STATUS.get(application_status or "", "new")


def _as_aware(value: datetime | None) -> datetime:
    if value is None:
        return datetime.min.replace(tzinfo=timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _str(value) -> str | None:
    return str(value) if value is not None else None


def _matches_filters(view: CandidateView, filters: CandidateFilters) -> bool:
    if filters.status and view.status != filters.status:
        return False
    if filters.archetype and view.teacher_archetype != filters.archetype:
        return False
    if filters.grade_level and filters.grade_level not in view.teacher_grade_levels:
        return False
    return True


def sort_candidates(views: Iterable[CandidateView]) -> list[CandidateView]:
    """Score descending, newest first among equal scores."""
    return sorted(views, key=lambda v: (v.match_score, _as_aware(v.created_at)), reverse=True)


async def _fetch_from_view(
    db: AsyncSession,
    job_ids: Sequence[UUID],
    filters: CandidateFilters,
    settings: Settings,
) -> list[CandidateView]:
    query = select(candidate_matches).where(candidate_matches.c.job_id.in_(job_ids))
    if filters.status:
        query = query.where(candidate_matches.c.status == filters.status)
    if filters.archetype:
        query = query.where(candidate_matches.c.teacher_archetype == filters.archetype)

    result = await with_timeout(
        db.execute(query),
        settings.STORE_READ_TIMEOUT_SECONDS,
        operation="load_candidate_matches",
    )
    return [
        CandidateView(
            id=str(row.id),
            job_id=str(row.job_id),
            teacher_id=str(row.teacher_id),
            match_score=row.match_score or 0,
            match_reason=row.match_reason,
            status=row.status,
            school_notes=row.school_notes,
            created_at=row.created_at,
            updated_at=row.updated_at,
            job_title=row.job_title or "",
            school_id=_str(row.school_id),
            school_name=row.school_name or "",
            teacher_user_id=_str(row.teacher_user_id),
            teacher_name=row.teacher_name or "",
            teacher_email=row.teacher_email,
            teacher_location=row.teacher_location,
            teacher_archetype=row.teacher_archetype,
            teacher_subjects=row.teacher_subjects or [],
            teacher_grade_levels=row.teacher_grade_levels or [],
            teacher_years_experience=row.teacher_years_experience,
            teacher_photo_url=row.teacher_photo_url,
            teacher_resume_url=row.teacher_resume_url,
            application_id=_str(row.application_id),
            application_status=row.application_status,
            source="match",
        )
        for row in result.all()
    ]


async def _fetch_from_tables(
    db: AsyncSession,
    job_ids: Sequence[UUID],
    filters: CandidateFilters,
    settings: Settings,
) -> list[CandidateView]:
    """Same rows as the view, joined by hand."""
    query = (
        select(JobCandidate, Job, School, Teacher, Application)
        .join(Job, JobCandidate.job_id == Job.id)
        .join(School, Job.school_id == School.id)
        .join(Teacher, JobCandidate.teacher_id == Teacher.id)
        .outerjoin(
            Application,
            and_(
                Application.job_id == JobCandidate.job_id,
                Application.teacher_id == JobCandidate.teacher_id,
            ),
        )
        .where(JobCandidate.job_id.in_(job_ids))
    )
    if filters.status:
        query = query.where(JobCandidate.status == filters.status)
    if filters.archetype:
        query = query.where(Teacher.archetype == filters.archetype)

    result = await with_timeout(
        db.execute(query),
        settings.STORE_READ_TIMEOUT_SECONDS,
        operation="load_job_candidates",
    )
    return [
        CandidateView(
            id=str(match.id),
            job_id=str(match.job_id),
            teacher_id=str(match.teacher_id),
            match_score=match.match_score or 0,
            match_reason=match.match_reason,
            status=match.status,
            school_notes=match.school_notes,
            created_at=match.created_at,
            updated_at=match.updated_at,
            job_title=job.title,
            school_id=str(school.id),
            school_name=job.school_name or school.school_name,
            teacher_user_id=str(teacher.user_id),
            teacher_name=teacher.full_name,
            teacher_email=teacher.email,
            teacher_location=teacher.location,
            teacher_archetype=teacher.archetype,
            teacher_subjects=teacher.subjects or [],
            teacher_grade_levels=teacher.grade_levels or [],
            teacher_years_experience=teacher.years_experience,
            teacher_photo_url=teacher.profile_photo_url,
            teacher_resume_url=teacher.resume_url,
            application_id=_str(application.id) if application else None,
            application_status=application.status if application else None,
            source="match",
        )
        for match, job, school, teacher, application in result.all()
    ]


async def _fetch_match_views(
    db: AsyncSession,
    job_ids: Sequence[UUID],
    filters: CandidateFilters,
    settings: Settings,
) -> list[CandidateView]:
    try:
        return await _fetch_from_view(db, job_ids, filters, settings)
    except (OperationalError, ProgrammingError) as e:
        # The view is missing (or broken); the base tables carry the same data
        await db.rollback()
        logger.warning("candidate_view_unavailable", error=str(e.orig))
    except (SQLAlchemyError, SchoolMatchError) as e:
        await db.rollback()
        logger.warning("candidate_matches_fetch_failed", error=str(e))
        return []

    try:
        return await _fetch_from_tables(db, job_ids, filters, settings)
    except (SQLAlchemyError, SchoolMatchError) as e:
        await db.rollback()
        logger.warning("candidate_matches_fetch_failed", error=str(e))
        return []


async def _fetch_covered_keys(db: AsyncSession, job_ids: Sequence[UUID], settings: Settings) -> set[Key]:
    """(job, teacher) pairs that have a match record, whatever its status."""
    try:
        result = await with_timeout(
            db.execute(
                select(JobCandidate.job_id, JobCandidate.teacher_id).where(JobCandidate.job_id.in_(job_ids))
            ),
            settings.STORE_READ_TIMEOUT_SECONDS,
            operation="load_match_keys",
        )
    except (SQLAlchemyError, SchoolMatchError) as e:
        await db.rollback()
        logger.warning("match_keys_fetch_failed", error=str(e))
        return set()
    return {(str(job_id), str(teacher_id)) for job_id, teacher_id in result.all()}


async def _fetch_applications(
    db: AsyncSession,
    job_ids: Sequence[UUID],
    settings: Settings,
) -> list[tuple[Application, Job, Teacher]]:
    try:
        result = await with_timeout(
            db.execute(
                select(Application, Job, Teacher)
                .join(Job, Application.job_id == Job.id)
                .join(Teacher, Application.teacher_id == Teacher.id)
                .where(Application.job_id.in_(job_ids))
            ),
            settings.STORE_READ_TIMEOUT_SECONDS,
            operation="load_applications",
        )
    except (SQLAlchemyError, SchoolMatchError) as e:
        await db.rollback()
        logger.warning("applications_fetch_failed", error=str(e))
        return []
    return list(result.all())


def synthesize_from_application(
    application: Application,
    job: Job,
    teacher: Teacher,
    score: int,
) -> CandidateView:
    return CandidateView(
        id=str(application.id),
        job_id=str(application.job_id),
        teacher_id=str(application.teacher_id),
        match_score=score,
        match_reason=APPLICATION_ONLY_REASON,
        status=display_status_for(application.status),
        created_at=application.applied_at,
        updated_at=application.applied_at,
        job_title=job.title,
        school_id=str(job.school_id),
        school_name=job.school_name,
        teacher_user_id=str(teacher.user_id),
        teacher_name=teacher.full_name,
        teacher_email=teacher.email,
        teacher_location=teacher.location,
        teacher_archetype=teacher.archetype,
        teacher_subjects=teacher.subjects or [],
        teacher_grade_levels=teacher.grade_levels or [],
        teacher_years_experience=teacher.years_experience,
        teacher_photo_url=teacher.profile_photo_url,
        teacher_resume_url=teacher.resume_url,
        application_id=str(application.id),
        application_status=application.status,
        source="application",
    )


async def aggregate(
    db: AsyncSession,
    job_ids: Sequence[UUID],
    filters: CandidateFilters | None = None,
    settings: Settings | None = None,
) -> list[CandidateView]:
    """One entry per (job, teacher) across ``job_ids``, best candidates first.

    Either source failing degrades to an empty contribution with a warning;
    nothing here raises because one of the two paths is unavailable.
    """
    settings = settings or get_settings()
    filters = filters or CandidateFilters()
    if not job_ids:
        return []

    # Filtered-out matches still cover their pair
    covered = await _fetch_covered_keys(db, job_ids, settings)

    matched = []
    seen: set[Key] = set()
    for view in await _fetch_match_views(db, job_ids, filters, settings):
        key = (view.job_id, view.teacher_id)
        # The application join can repeat a match row
        if key in seen or not _matches_filters(view, filters):
            continue
        seen.add(key)
        matched.append(view)
    covered.update(seen)

    synthesized = []
    for application, job, teacher in await _fetch_applications(db, job_ids, settings):
        key = (str(application.job_id), str(application.teacher_id))
        if key in covered:
            continue
        # Duplicate applications for one pair collapse into the first seen
        covered.add(key)
        view = synthesize_from_application(application, job, teacher, settings.APPLICATION_ONLY_SCORE)
        if _matches_filters(view, filters):
            synthesized.append(view)

    logger.info(
        "candidates_aggregated",
        jobs=len(job_ids),
        matched=len(matched),
        application_only=len(synthesized),
    )
    return sort_candidates(matched + synthesized)


async def get_school_candidates(
    db: AsyncSession,
    school_id: UUID,
    filters: CandidateFilters | None = None,
    settings: Settings | None = None,
) -> list[CandidateView]:
    """Candidates across all of a school's jobs (or one of them via ``filters.job_id``).

    The job-list lookup is required; its failures propagate.
    """
    settings = settings or get_settings()
    filters = filters or CandidateFilters()

    school = await with_timeout(
        db.get(School, school_id),
        settings.STORE_READ_TIMEOUT_SECONDS,
        operation="load_school",
    )
    if school is None:
        raise RecordNotFound("School not found", operation="get_school_candidates")

    query = select(Job.id).where(Job.school_id == school_id)
    if filters.job_id:
        query = query.where(Job.id == filters.job_id)
    result = await with_timeout(
        db.execute(query),
        settings.STORE_READ_TIMEOUT_SECONDS,
        operation="load_school_jobs",
    )
    job_ids = list(result.scalars().all())
    return await aggregate(db, job_ids, filters, settings)


async def get_job_candidates(
    db: AsyncSession,
    job_id: UUID,
    filters: CandidateFilters | None = None,
    settings: Settings | None = None,
) -> list[CandidateView]:
    settings = settings or get_settings()
    job = await with_timeout(
        db.get(Job, job_id),
        settings.STORE_READ_TIMEOUT_SECONDS,
        operation="load_job",
    )
    if job is None:
        raise RecordNotFound("Job not found", operation="get_job_candidates")
    return await aggregate(db, [job_id], filters, settings)
