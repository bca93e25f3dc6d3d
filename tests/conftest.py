import uuid

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

import schoolmatch.models  # noqa: F401  registers every table on Base.metadata
from schoolmatch.core.concurrency import drain_background_tasks
from schoolmatch.core.config import Settings
from schoolmatch.core.database import Base
from schoolmatch.schemas.notification import DeliveryResult


def make_settings(**overrides) -> Settings:
    values = {
        "BULK_STATUS_CONCURRENCY": 1,
        "RESEND_API_KEY": "",
        "FRONTEND_URL": "http://frontend.test",
        "STORE_READ_TIMEOUT_SECONDS": 5.0,
        "STORE_WRITE_TIMEOUT_SECONDS": 5.0,
    }
    values.update(overrides)
    return Settings(**values)


class FakeEmailChannel:
    def __init__(self, fail_with: str | None = None):
        self.fail_with = fail_with
        self.sent: list[dict] = []

    async def send(self, to: str, subject: str, html: str) -> DeliveryResult:
        self.sent.append({"to": to, "subject": subject, "html": html})
        if self.fail_with:
            return DeliveryResult(success=False, error=self.fail_with)
        return DeliveryResult(success=True, message_id=f"msg-{len(self.sent)}")


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingDispatcher:
    """Stands in for NotificationDispatcher where only the intents matter."""

    def __init__(self):
        self.intents = []

    async def notify(self, intent) -> bool:
        self.intents.append(intent)
        return True

    def kinds(self) -> list[str]:
        return [i.kind for i in self.intents]


@pytest.fixture()
def settings():
    return make_settings()


@pytest_asyncio.fixture()
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'schoolmatch.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory
    await drain_background_tasks()
    await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture()
def email_channel():
    return FakeEmailChannel()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def recording_dispatcher():
    return RecordingDispatcher()


@pytest_asyncio.fixture()
async def client(session_factory, settings, email_channel):
    from schoolmatch.core.database import get_db
    from schoolmatch.core.dependencies import get_dispatcher, get_session_factory, get_status_synchronizer
    from schoolmatch.main import app
    from schoolmatch.services.notifications import NotificationDispatcher
    from schoolmatch.services.pipeline import StatusSynchronizer

    dispatcher = NotificationDispatcher(session_factory, email_channel, settings)
    synchronizer = StatusSynchronizer(session_factory, dispatcher, settings)

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_status_synchronizer] = lambda: synchronizer
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await drain_background_tasks()
    app.dependency_overrides.clear()


# --- Seed helpers: each commits in its own session ---


async def _save(session_factory, *objects):
    async with session_factory() as session:
        session.add_all(objects)
        await session.commit()
    return objects[0] if len(objects) == 1 else objects


async def create_school(session_factory, name="Lincoln High", location="Austin, TX", email=None, logo_url=None):
    from schoolmatch.models.school import School
    from schoolmatch.models.user import User

    user = User(id=uuid.uuid4(), email=email or f"school-{uuid.uuid4().hex[:8]}@test.com", full_name=name, role="school")
    school = School(id=uuid.uuid4(), user_id=user.id, school_name=name, location=location, logo_url=logo_url)
    await _save(session_factory, user, school)
    return school


async def create_teacher(
    session_factory,
    full_name="Ada Teacher",
    subjects=("Math",),
    grade_levels=("9-12",),
    location="Austin, TX",
    archetype=None,
    profile_complete=True,
    email=None,
    created_at=None,
):
    from schoolmatch.models.teacher import Teacher
    from schoolmatch.models.user import User

    address = email or f"teacher-{uuid.uuid4().hex[:8]}@test.com"
    user = User(id=uuid.uuid4(), email=address, full_name=full_name, role="teacher")
    teacher = Teacher(
        id=uuid.uuid4(),
        user_id=user.id,
        full_name=full_name,
        email=address,
        location=location,
        years_experience="5",
        subjects=list(subjects),
        grade_levels=list(grade_levels),
        archetype=archetype,
        profile_complete=profile_complete,
    )
    if created_at is not None:
        teacher.created_at = created_at
    await _save(session_factory, user, teacher)
    return teacher


async def create_job(
    session_factory,
    school,
    title="Math Teacher",
    subject="Math",
    grade_level="9-12",
    location="Austin, TX",
    archetype_tags=(),
    is_active=True,
):
    from schoolmatch.models.job import Job

    job = Job(
        id=uuid.uuid4(),
        school_id=school.id,
        school_name=school.school_name,
        title=title,
        subject=subject,
        grade_level=grade_level,
        location=location,
        archetype_tags=list(archetype_tags),
        is_active=is_active,
    )
    return await _save(session_factory, job)


async def create_candidate(session_factory, job, teacher, match_score=80, status="new", created_at=None):
    from schoolmatch.models.job_candidate import JobCandidate

    candidate = JobCandidate(
        id=uuid.uuid4(),
        job_id=job.id,
        teacher_id=teacher.id,
        match_score=match_score,
        match_reason="Subject: Math",
        status=status,
    )
    if created_at is not None:
        candidate.created_at = created_at
    return await _save(session_factory, candidate)


async def create_application(session_factory, job, teacher, status="pending", applied_at=None):
    from schoolmatch.models.application import Application

    application = Application(
        id=uuid.uuid4(),
        job_id=job.id,
        teacher_id=teacher.id,
        cover_letter="I would love to teach here.",
        status=status,
    )
    if applied_at is not None:
        application.applied_at = applied_at
    return await _save(session_factory, application)
