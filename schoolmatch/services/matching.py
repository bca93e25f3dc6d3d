"""Fan-out matcher: which teachers should hear about a newly posted job.

Separate from the weighted scorer in ``services.scoring``. This one drops
ineligible teachers with hard filters first and ranks the rest with a
cheap additive score.
"""

from collections.abc import Iterable

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from schoolmatch.core.concurrency import with_timeout
from schoolmatch.core.config import Settings, get_settings
from schoolmatch.models.job import ALL_GRADES, Job
from schoolmatch.models.teacher import Teacher
from schoolmatch.schemas.matching import RankedCandidate

logger = structlog.get_logger()

SUBJECT_POINTS = 40
GRADE_POINTS = 30
LOCATION_OVERLAP_POINTS = 20
LOCATION_OTHER_POINTS = 5
ARCHETYPE_POINTS = 10


def locations_overlap(a: str | None, b: str | None) -> bool:
    """Loose comparison of free-text locations.

    Both sides are split on commas ("Austin, TX"); any part of one that
    contains, or is contained in, a part of the other counts as overlap.
    """
    parts_a = [p.strip() for p in (a or "").lower().split(",") if p.strip()]
    parts_b = [p.strip() for p in (b or "").lower().split(",") if p.strip()]
    return any(pa in pb or pb in pa for pa in parts_a for pb in parts_b)


def passes_hard_filters(teacher: Teacher, job: Job) -> bool:
    if not teacher.profile_complete:
        return False
    if job.subject and job.subject not in (teacher.subjects or []):
        return False
    if job.grade_level and job.grade_level != ALL_GRADES and job.grade_level not in (teacher.grade_levels or []):
        return False
    return True


def soft_score(teacher: Teacher, job: Job) -> tuple[int, list[str]]:
    points = 0
    reasons: list[str] = []

    if job.subject and job.subject in (teacher.subjects or []):
        points += SUBJECT_POINTS
        reasons.append(f"Subject: {job.subject}")

    if job.grade_level == ALL_GRADES:
        points += GRADE_POINTS
        reasons.append("Grade level: all grades")
    elif job.grade_level and job.grade_level in (teacher.grade_levels or []):
        points += GRADE_POINTS
        reasons.append(f"Grade level: {job.grade_level}")

    if teacher.location and job.location:
        if locations_overlap(teacher.location, job.location):
            points += LOCATION_OVERLAP_POINTS
            reasons.append(f"Location: {job.location}")
        else:
            points += LOCATION_OTHER_POINTS

    if teacher.archetype and teacher.archetype in (job.archetype_tags or []):
        points += ARCHETYPE_POINTS
        reasons.append(f"Archetype: {teacher.archetype}")

    return min(points, 100), reasons


def rank_teachers(
    job: Job,
    teachers: Iterable[Teacher],
    limit: int = 50,
    min_score: int = 40,
) -> list[RankedCandidate]:
    ranked = []
    for teacher in teachers:
        if not passes_hard_filters(teacher, job):
            continue
        points, reasons = soft_score(teacher, job)
        if points < min_score:
            continue
        ranked.append(
            RankedCandidate(
                teacher_id=teacher.id,
                teacher_user_id=teacher.user_id,
                full_name=teacher.full_name,
                email=teacher.email or None,
                location=teacher.location or None,
                archetype=teacher.archetype,
                match_score=points,
                match_reasons=reasons,
            )
        )

    # sort() is stable: equal scores keep store order
    ranked.sort(key=lambda r: r.match_score, reverse=True)
    return ranked[:limit]


async def find_matches(db: AsyncSession, job: Job, settings: Settings | None = None) -> list[RankedCandidate]:
    """Rank complete teacher profiles for ``job``, capped at MATCH_RESULT_LIMIT."""
    settings = settings or get_settings()

    result = await with_timeout(
        db.execute(select(Teacher).where(Teacher.profile_complete.is_(True)).order_by(Teacher.created_at)),
        settings.STORE_READ_TIMEOUT_SECONDS,
        operation="load_teacher_profiles",
    )
    teachers = result.scalars().all()

    ranked = rank_teachers(
        job,
        teachers,
        limit=settings.MATCH_RESULT_LIMIT,
        min_score=settings.MATCH_MIN_SCORE,
    )
    logger.info(
        "find_matches",
        job_id=str(job.id),
        scanned=len(teachers),
        matched=len(ranked),
    )
    return ranked
