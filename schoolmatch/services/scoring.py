"""Weighted compatibility score between a teacher profile and a job posting.

Runs on read paths (recommendations, score breakdowns), so it must cope with
partially filled profiles: missing data scores neutral instead of raising.
"""

from collections.abc import Iterable
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from schoolmatch.schemas.matching import CandidateProfile, JobPosting, ScoreResult

T = TypeVar("T", bound=BaseModel)

# Weights sum to 100 so the weighted total is in [0, 10000]
WEIGHTS = {
    "subject": 35,
    "grade_level": 25,
    "archetype": 20,
    "location": 15,
    "experience": 5,
}

FULL = 100
NONE = 0
NEUTRAL = 50
LOCATION_MISMATCH = 70
# Experience is not compared, every candidate gets the same value
EXPERIENCE_NEUTRAL = 80


def _coerce(model: type[T], value: Any) -> T:
    if isinstance(value, model):
        return value
    if value is None:
        return model()
    if isinstance(value, dict):
        source = value
    else:
        source = {name: getattr(value, name, None) for name in model.model_fields}
    data = {k: v for k, v in source.items() if k in model.model_fields and v is not None}
    try:
        return model.model_validate(data)
    except ValidationError:
        # Malformed fields are still scored, just without validation
        return model.model_construct(**data)


def _as_set(value: Any) -> set[str]:
    if not value:
        return set()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, Iterable):
        return set()
    return {str(v).strip() for v in value if v is not None and str(v).strip()}


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def _subject_factor(candidate: CandidateProfile, job: JobPosting) -> tuple[int, str | None]:
    subject = _text(job.subject)
    if not subject:
        return NEUTRAL, None
    if subject in _as_set(candidate.subjects):
        return FULL, f"Teaches {subject}"
    return NONE, None


def _grade_factor(candidate: CandidateProfile, job: JobPosting) -> tuple[int, str | None]:
    grade = _text(job.grade_level)
    if not grade:
        return NEUTRAL, None
    if grade in _as_set(candidate.grade_levels):
        return FULL, f"Experienced with {grade}"
    return NONE, None


def _archetype_factor(candidate: CandidateProfile, job: JobPosting) -> tuple[int, str | None]:
    tags = _as_set(job.archetype_tags)
    archetype = _text(candidate.archetype)
    if not tags or not archetype:
        return NEUTRAL, None
    if archetype in tags:
        return FULL, f"{archetype} archetype fits this school"
    return NEUTRAL, None


def _location_factor(candidate: CandidateProfile, job: JobPosting) -> tuple[int, str | None]:
    candidate_location = _text(candidate.location)
    if candidate_location and candidate_location == _text(job.location):
        return FULL, f"Located in {candidate_location}"
    return LOCATION_MISMATCH, None


def score(candidate: CandidateProfile | Any, job: JobPosting | Any) -> ScoreResult:
    """Score ``candidate`` against ``job``.

    Accepts the pydantic value types, plain dicts or anything with the same
    attributes (ORM rows included). The result is always an integer in
    [0, 100], rounded half up.
    """
    candidate = _coerce(CandidateProfile, candidate)
    job = _coerce(JobPosting, job)

    factors: dict[str, int] = {}
    reasons: list[str] = []
    for name, factor in (
        ("subject", _subject_factor),
        ("grade_level", _grade_factor),
        ("archetype", _archetype_factor),
        ("location", _location_factor),
    ):
        value, reason = factor(candidate, job)
        factors[name] = value
        if reason:
            reasons.append(reason)
    factors["experience"] = EXPERIENCE_NEUTRAL

    weighted = sum(factors[name] * weight for name, weight in WEIGHTS.items())
    total = (weighted + 50) // 100
    return ScoreResult(score=max(0, min(100, total)), reasons=reasons, factors=factors)
