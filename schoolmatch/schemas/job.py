from datetime import datetime

from pydantic import BaseModel

from schoolmatch.schemas.matching import RankedCandidate


class JobCreate(BaseModel):
    title: str
    subject: str = ""
    grade_level: str = ""
    job_type: str = "Full-time"
    department: str = ""
    location: str = ""
    salary: str = ""
    description: str = ""
    requirements: str = ""
    benefits: str = ""
    archetype_tags: list[str] = []


class JobResponse(BaseModel):
    id: str
    school_id: str
    title: str
    subject: str
    grade_level: str
    job_type: str
    location: str
    school_name: str
    school_logo: str | None = None
    archetype_tags: list[str]
    is_active: bool
    posted_at: datetime


class MatchListResponse(BaseModel):
    job_id: str
    total: int
    matches: list[RankedCandidate]
