from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel


class CandidateView(BaseModel):
    """One row of a school's candidate list, from a match or an application."""

    id: str
    job_id: str
    teacher_id: str
    match_score: int
    match_reason: str | None = None
    status: str
    school_notes: str | None = None
    created_at: datetime
    updated_at: datetime | None = None
    job_title: str = ""
    school_id: str | None = None
    school_name: str = ""
    teacher_user_id: str | None = None
    teacher_name: str = ""
    teacher_email: str | None = None
    teacher_location: str | None = None
    teacher_archetype: str | None = None
    teacher_subjects: list[str] = []
    teacher_grade_levels: list[str] = []
    teacher_years_experience: str | None = None
    teacher_photo_url: str | None = None
    teacher_resume_url: str | None = None
    application_id: str | None = None
    application_status: str | None = None
    source: Literal["match", "application"] = "match"


class CandidateFilters(BaseModel):
    job_id: UUID | None = None
    status: str | None = None
    archetype: str | None = None
    grade_level: str | None = None


class StatusUpdateRequest(BaseModel):
    status: str
    notes: str | None = None


class BulkStatusRequest(BaseModel):
    candidate_ids: list[UUID]
    status: str
    notes: str | None = None


class BulkStatusFailure(BaseModel):
    candidate_id: str
    error: str


class BulkStatusResult(BaseModel):
    updated: list[str] = []
    failed: list[BulkStatusFailure] = []
    application_sync_failed: list[str] = []


class MatchRecordResponse(BaseModel):
    id: UUID
    job_id: UUID
    teacher_id: UUID
    match_score: int
    match_reason: str | None
    status: str
    school_notes: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
