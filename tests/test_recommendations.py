import uuid

import pytest
from conftest import create_job, create_school, create_teacher
from sqlalchemy import select

from schoolmatch.core.errors import RecordNotFound
from schoolmatch.models.teacher_job_match import TeacherJobMatch
from schoolmatch.schemas.matching import JobMatchUpdate
from schoolmatch.services.recommendations import recommend_jobs, score_teacher_for_job, update_job_match


@pytest.mark.asyncio
async def test_recommendations_are_scored_and_stored(session_factory, settings):
    teacher = await create_teacher(session_factory)
    school = await create_school(session_factory)
    exact = await create_job(session_factory, school, title="Exact", location="Austin, TX")
    elsewhere = await create_job(session_factory, school, title="Elsewhere", location="Denver, CO")
    await create_job(session_factory, school, title="Closed", is_active=False)

    async with session_factory() as db:
        recommendations = await recommend_jobs(db, teacher.id, settings=settings)
        await db.commit()

    assert [(r.title, r.match_score) for r in recommendations] == [("Exact", 89), ("Elsewhere", 85)]
    async with session_factory() as db:
        stored = (await db.execute(select(TeacherJobMatch).where(TeacherJobMatch.teacher_id == teacher.id))).scalars().all()
    assert {m.job_id for m in stored} == {exact.id, elsewhere.id}


@pytest.mark.asyncio
async def test_hidden_matches_are_left_out(session_factory, settings):
    teacher = await create_teacher(session_factory)
    school = await create_school(session_factory)
    await create_job(session_factory, school, title="Keep")
    await create_job(session_factory, school, title="Hide")

    async with session_factory() as db:
        first = await recommend_jobs(db, teacher.id, settings=settings)
        hide = next(r for r in first if r.title == "Hide")
        match = await update_job_match(db, teacher.id, uuid.UUID(hide.match_id), JobMatchUpdate(is_hidden=True), settings)
        await db.commit()
    assert match.is_hidden

    async with session_factory() as db:
        second = await recommend_jobs(db, teacher.id, settings=settings)

    assert [r.title for r in second] == ["Keep"]


@pytest.mark.asyncio
async def test_score_breakdown(session_factory, settings):
    teacher = await create_teacher(session_factory, location="Dallas, TX")
    school = await create_school(session_factory)
    job = await create_job(session_factory, school)

    async with session_factory() as db:
        breakdown = await score_teacher_for_job(db, job.id, teacher.id, settings)

    assert breakdown.score == 85
    assert breakdown.factors["location"] == 70
    assert breakdown.job_id == str(job.id)


@pytest.mark.asyncio
async def test_unknown_ids_raise_not_found(session_factory, settings):
    teacher = await create_teacher(session_factory)
    async with session_factory() as db:
        with pytest.raises(RecordNotFound):
            await recommend_jobs(db, uuid.uuid4(), settings=settings)
        with pytest.raises(RecordNotFound):
            await score_teacher_for_job(db, uuid.uuid4(), teacher.id, settings)
        with pytest.raises(RecordNotFound):
            await update_job_match(db, teacher.id, uuid.uuid4(), JobMatchUpdate(is_favorited=True), settings)
