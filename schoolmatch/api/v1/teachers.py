from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from schoolmatch.core.database import get_db
from schoolmatch.schemas.matching import JobMatchUpdate, JobRecommendation
from schoolmatch.services.recommendations import recommend_jobs, update_job_match

router = APIRouter(prefix="/teachers", tags=["teachers"])


@router.get("/{teacher_id}/recommended-jobs", response_model=list[JobRecommendation])
async def recommended_jobs(
    teacher_id: UUID,
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    return await recommend_jobs(db, teacher_id, limit)


@router.patch("/{teacher_id}/job-matches/{match_id}")
async def update_recommended_job(
    teacher_id: UUID,
    match_id: UUID,
    data: JobMatchUpdate,
    db: AsyncSession = Depends(get_db),
):
    """
    Favourite or hide a recommended job.
    """
    match = await update_job_match(db, teacher_id, match_id, data)
    return {
        "status": "ok",
        "id": str(match.id),
        "is_favorited": match.is_favorited,
        "is_hidden": match.is_hidden,
    }
