from uuid import UUID

from pydantic import BaseModel


class CandidateProfile(BaseModel):
    """Scoring view of a teacher profile. Every field may be missing."""

    id: UUID | None = None
    subjects: list[str] | None = None
    grade_levels: list[str] | None = None
    archetype: str | None = None
    location: str | None = None
    years_experience: str | None = None
    profile_complete: bool = False

    model_config = {"from_attributes": True}


class JobPosting(BaseModel):
    id: UUID | None = None
    school_id: UUID | None = None
    title: str | None = None
    subject: str | None = None
    grade_level: str | None = None
    archetype_tags: list[str] | None = None
    location: str | None = None

    model_config = {"from_attributes": True}


class ScoreResult(BaseModel):
    score: int
    reasons: list[str]
    factors: dict[str, int] = {}


class ScoreBreakdownResponse(ScoreResult):
    job_id: str
    teacher_id: str


class RankedCandidate(BaseModel):
    teacher_id: UUID
    teacher_user_id: UUID | None = None
    full_name: str
    email: str | None = None
    location: str | None = None
    archetype: str | None = None
    match_score: int
    match_reasons: list[str]

    @property
    def match_reason(self) -> str:
        return ", ".join(self.match_reasons)


class JobRecommendation(BaseModel):
    match_id: str
    job_id: str
    title: str
    school_name: str
    location: str
    subject: str
    grade_level: str
    match_score: int
    match_reason: str | None = None
    is_favorited: bool = False


class JobMatchUpdate(BaseModel):
    is_favorited: bool | None = None
    is_hidden: bool | None = None


class NotificationIntent(BaseModel):
    """A state change that may turn into a notification.

    ``recipient_id`` is the school id for school-facing kinds
    (new_candidate_match, new_application) and the teacher id for
    teacher-facing kinds (new_job_match, application_status).
    """

    kind: str
    recipient_id: UUID
    payload: dict = {}
