from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from schoolmatch.core.database import get_db
from schoolmatch.core.dependencies import get_status_synchronizer
from schoolmatch.schemas.candidate import (
    BulkStatusRequest,
    BulkStatusResult,
    CandidateFilters,
    CandidateView,
    MatchRecordResponse,
    StatusUpdateRequest,
)
from schoolmatch.services.aggregation import get_job_candidates, get_school_candidates
from schoolmatch.services.pipeline import StatusSynchronizer

router = APIRouter(tags=["candidates"])


@router.get("/schools/{school_id}/candidates", response_model=list[CandidateView])
async def list_school_candidates(
    school_id: UUID,
    job_id: UUID | None = None,
    status: str | None = None,
    archetype: str | None = None,
    grade_level: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    filters = CandidateFilters(job_id=job_id, status=status, archetype=archetype, grade_level=grade_level)
    return await get_school_candidates(db, school_id, filters)


@router.get("/jobs/{job_id}/candidates", response_model=list[CandidateView])
async def list_job_candidates(
    job_id: UUID,
    status: str | None = None,
    archetype: str | None = None,
    grade_level: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    filters = CandidateFilters(status=status, archetype=archetype, grade_level=grade_level)
    return await get_job_candidates(db, job_id, filters)


@router.patch("/candidates/{candidate_id}/status", response_model=MatchRecordResponse)
async def update_candidate_status(
    candidate_id: UUID,
    request: StatusUpdateRequest,
    synchronizer: StatusSynchronizer = Depends(get_status_synchronizer),
):
    """
    Move a candidate to another pipeline status.
    The teacher's application is updated and the teacher notified in the background.
    """
    return await synchronizer.set_status(candidate_id, request.status, request.notes)


@router.post("/candidates/bulk-status", response_model=BulkStatusResult)
async def bulk_update_candidate_status(
    request: BulkStatusRequest,
    synchronizer: StatusSynchronizer = Depends(get_status_synchronizer),
):
    return await synchronizer.bulk_set_status(request.candidate_ids, request.status, request.notes)
