from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from schoolmatch.core.config import get_settings
from schoolmatch.core.database import get_db
from schoolmatch.core.dependencies import get_dispatcher, get_session_factory
from schoolmatch.core.errors import RecordNotFound
from schoolmatch.models.job import Job
from schoolmatch.schemas.job import JobCreate, JobResponse, MatchListResponse
from schoolmatch.schemas.matching import ScoreBreakdownResponse
from schoolmatch.services.jobs import create_job
from schoolmatch.services.matching import find_matches
from schoolmatch.services.notifications import NotificationDispatcher
from schoolmatch.services.recommendations import score_teacher_for_job

router = APIRouter(tags=["jobs"])
settings = get_settings()


def _job_response(job: Job) -> JobResponse:
    return JobResponse(
        id=str(job.id),
        school_id=str(job.school_id),
        title=job.title,
        subject=job.subject,
        grade_level=job.grade_level,
        job_type=job.job_type,
        location=job.location,
        school_name=job.school_name,
        school_logo=job.school_logo,
        archetype_tags=job.archetype_tags or [],
        is_active=job.is_active,
        posted_at=job.posted_at,
    )


@router.post(
    "/schools/{school_id}/jobs",
    response_model=JobResponse,
    status_code=status.HTTP_201_CREATED,
)
async def publish_job(
    school_id: UUID,
    data: JobCreate,
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """
    Publish a job. Matching teachers are found and notified in the background.
    """
    job = await create_job(db, school_id, data, session_factory, dispatcher, settings)
    return _job_response(job)


@router.get("/jobs/{job_id}/matches", response_model=MatchListResponse)
async def list_job_matches(job_id: UUID, db: AsyncSession = Depends(get_db)):
    job = await db.get(Job, job_id)
    if job is None:
        raise RecordNotFound("Job not found", operation="list_job_matches")
    matches = await find_matches(db, job, settings)
    return MatchListResponse(job_id=str(job_id), total=len(matches), matches=matches)


@router.get("/jobs/{job_id}/score/{teacher_id}", response_model=ScoreBreakdownResponse)
async def job_score_breakdown(job_id: UUID, teacher_id: UUID, db: AsyncSession = Depends(get_db)):
    return await score_teacher_for_job(db, job_id, teacher_id, settings)
