import uuid
from datetime import datetime, timedelta, timezone

import pytest
from conftest import FakeEmailChannel, create_application, create_candidate, create_job, create_school, create_teacher
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from schoolmatch.core.errors import ValidationFailure
from schoolmatch.models.email_notification import EmailNotification
from schoolmatch.models.notification import Notification
from schoolmatch.models.notification_preference import NotificationPreference
from schoolmatch.models.teacher_job_match import TeacherJobMatch
from schoolmatch.schemas.matching import NotificationIntent
from schoolmatch.services.notifications import (
    DebounceCache,
    NotificationDispatcher,
    candidate_match_intent,
    debounce_key,
    job_match_intent,
    new_application_intent,
)


@pytest.fixture()
def dispatcher(session_factory, email_channel, settings, clock):
    return NotificationDispatcher(session_factory, email_channel, settings, clock=clock)


async def _emails(session_factory):
    async with session_factory() as db:
        return (await db.execute(select(EmailNotification).order_by(EmailNotification.created_at))).scalars().all()


async def _notifications(session_factory, user_id):
    async with session_factory() as db:
        return (await db.execute(select(Notification).where(Notification.user_id == user_id))).scalars().all()


def _status_intent(job, teacher, status="shortlisted"):
    return NotificationIntent(
        kind="application_status",
        recipient_id=teacher.id,
        payload={
            "job_id": str(job.id),
            "teacher_id": str(teacher.id),
            "job_title": job.title,
            "school_name": job.school_name,
            "status": status,
        },
    )


# --- Debounce ---


def test_debounce_window(clock):
    cache = DebounceCache(60, clock)
    assert cache.should_fire("a")
    clock.advance(59)
    assert not cache.should_fire("a")
    assert cache.should_fire("b")
    clock.advance(1)
    assert cache.should_fire("a")


def test_debounce_evicts_expired_keys(clock):
    cache = DebounceCache(60, clock)
    for key in ("a", "b", "c"):
        cache.should_fire(key)
    clock.advance(61)
    cache.should_fire("d")
    assert len(cache) == 1


def test_debounce_keys_per_kind():
    school_id, job_id, teacher_id = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    assert debounce_key(
        NotificationIntent(kind="new_candidate_match", recipient_id=school_id, payload={"job_id": str(job_id)})
    ) == f"candidate-match:{school_id}:{job_id}"
    # Every new job match for a teacher shares one key
    assert debounce_key(
        NotificationIntent(kind="new_job_match", recipient_id=teacher_id, payload={"job_id": str(job_id)})
    ) == f"job-match:{teacher_id}"


@pytest.mark.asyncio
async def test_repeat_inside_window_is_dropped(session_factory, dispatcher, clock):
    school = await create_school(session_factory)
    job = await create_job(session_factory, school)

    assert await dispatcher.notify(candidate_match_intent(job))
    clock.advance(30)
    assert not await dispatcher.notify(candidate_match_intent(job))
    clock.advance(31)
    assert await dispatcher.notify(candidate_match_intent(job))

    assert len(await _emails(session_factory)) == 2


@pytest.mark.asyncio
async def test_separate_dispatchers_do_not_share_debounce(session_factory, email_channel, settings):
    school = await create_school(session_factory)
    job = await create_job(session_factory, school)

    first = NotificationDispatcher(session_factory, email_channel, settings)
    second = NotificationDispatcher(session_factory, email_channel, settings)

    assert await first.notify(candidate_match_intent(job))
    assert await second.notify(candidate_match_intent(job))


@pytest.mark.asyncio
async def test_unknown_kind_is_rejected(dispatcher):
    with pytest.raises(ValidationFailure):
        await dispatcher.notify(NotificationIntent(kind="weekly_report", recipient_id=uuid.uuid4()))


# --- Enqueue ---


@pytest.mark.asyncio
async def test_notify_writes_in_app_row_and_pending_email(session_factory, dispatcher):
    school = await create_school(session_factory, email="hr@lincoln.test")
    job = await create_job(session_factory, school)

    assert await dispatcher.notify(candidate_match_intent(job))

    notifications = await _notifications(session_factory, school.user_id)
    assert len(notifications) == 1
    assert notifications[0].type == "new_candidate_match"
    assert notifications[0].link_url == "http://frontend.test/school/dashboard"
    assert notifications[0].read is False

    emails = await _emails(session_factory)
    assert len(emails) == 1
    assert emails[0].status == "pending"
    assert emails[0].recipient_email == "hr@lincoln.test"
    assert emails[0].recipient_user_id == school.user_id
    assert emails[0].template_data["job_id"] == str(job.id)


@pytest.mark.asyncio
async def test_in_app_opt_out_still_queues_email(session_factory, dispatcher):
    teacher = await create_teacher(session_factory)
    school = await create_school(session_factory)
    job = await create_job(session_factory, school)
    async with session_factory() as db:
        db.add(NotificationPreference(user_id=teacher.user_id, notification_type="new_job_match", in_app_enabled=False))
        await db.commit()

    await dispatcher.notify(job_match_intent(teacher.id, job, 90, "Subject: Math"))

    assert await _notifications(session_factory, teacher.user_id) == []
    assert len(await _emails(session_factory)) == 1


@pytest.mark.asyncio
async def test_missing_recipient_is_skipped(session_factory, dispatcher):
    intent = NotificationIntent(kind="new_job_match", recipient_id=uuid.uuid4(), payload={})
    assert not await dispatcher.notify(intent)
    assert await _emails(session_factory) == []


# --- Queue processing ---


@pytest.mark.asyncio
async def test_candidate_match_email_counts_new_candidates(session_factory, dispatcher, email_channel):
    school = await create_school(session_factory, email="hr@lincoln.test")
    job = await create_job(session_factory, school)
    for i in range(3):
        await create_candidate(session_factory, job, await create_teacher(session_factory, full_name=f"T{i}"))
    await create_candidate(
        session_factory, job, await create_teacher(session_factory, full_name="Seen"), status="reviewed"
    )

    await dispatcher.notify(candidate_match_intent(job))
    counts = await dispatcher.process_queue()

    assert counts == {"processed": 1, "succeeded": 1, "failed": 0}
    assert email_channel.sent[0]["to"] == "hr@lincoln.test"
    assert email_channel.sent[0]["subject"] == "3 New Candidates for Math Teacher"
    emails = await _emails(session_factory)
    assert emails[0].status == "sent"
    assert emails[0].sent_at is not None
    assert emails[0].subject == "3 New Candidates for Math Teacher"


@pytest.mark.asyncio
async def test_candidate_match_email_counts_at_least_one(session_factory, dispatcher, email_channel):
    school = await create_school(session_factory)
    job = await create_job(session_factory, school)

    await dispatcher.notify(candidate_match_intent(job))
    await dispatcher.process_queue()

    assert email_channel.sent[0]["subject"] == "1 New Candidate for Math Teacher"


@pytest.mark.asyncio
async def test_single_job_match_email(session_factory, dispatcher, email_channel):
    teacher = await create_teacher(session_factory, full_name="Ada")
    school = await create_school(session_factory)
    job = await create_job(session_factory, school)
    async with session_factory() as db:
        db.add(TeacherJobMatch(teacher_id=teacher.id, job_id=job.id, match_score=90, match_reason="Subject: Math"))
        await db.commit()

    await dispatcher.notify(job_match_intent(teacher.id, job, 90, "Subject: Math"))
    await dispatcher.process_queue()

    sent = email_channel.sent[0]
    assert sent["subject"] == "New Job Match: Math Teacher at Lincoln High"
    assert "Ada" in sent["html"]


@pytest.mark.asyncio
async def test_job_matches_are_digested(session_factory, dispatcher, email_channel):
    teacher = await create_teacher(session_factory)
    school = await create_school(session_factory)
    jobs = [await create_job(session_factory, school, title=f"Job {i}") for i in range(3)]
    hidden_job = await create_job(session_factory, school, title="Hidden")
    stale_job = await create_job(session_factory, school, title="Stale")
    async with session_factory() as db:
        for score, job in zip((70, 90, 80), jobs):
            db.add(TeacherJobMatch(teacher_id=teacher.id, job_id=job.id, match_score=score))
        db.add(TeacherJobMatch(teacher_id=teacher.id, job_id=hidden_job.id, match_score=99, is_hidden=True))
        db.add(
            TeacherJobMatch(
                teacher_id=teacher.id,
                job_id=stale_job.id,
                match_score=95,
                created_at=datetime.now(timezone.utc) - timedelta(days=3),
            )
        )
        await db.commit()

    await dispatcher.notify(job_match_intent(teacher.id, jobs[0], 70, None))
    await dispatcher.notify(job_match_intent(teacher.id, jobs[1], 90, None))
    await dispatcher.process_queue()

    # The second event fell inside the debounce window
    assert len(email_channel.sent) == 1
    sent = email_channel.sent[0]
    assert sent["subject"] == "3 New Job Matches for You"
    assert sent["html"].index("Job 1") < sent["html"].index("Job 2") < sent["html"].index("Job 0")
    assert "Hidden" not in sent["html"]
    assert "Stale" not in sent["html"]


@pytest.mark.asyncio
async def test_job_match_with_nothing_left_is_cancelled(session_factory, dispatcher, email_channel):
    teacher = await create_teacher(session_factory)
    school = await create_school(session_factory)
    job = await create_job(session_factory, school)

    await dispatcher.notify(job_match_intent(teacher.id, job, 90, None))
    counts = await dispatcher.process_queue()

    assert counts == {"processed": 0, "succeeded": 0, "failed": 0}
    assert email_channel.sent == []
    assert (await _emails(session_factory))[0].status == "cancelled"


@pytest.mark.asyncio
async def test_application_status_email_uses_current_status(session_factory, dispatcher, email_channel):
    teacher = await create_teacher(session_factory)
    school = await create_school(session_factory)
    job = await create_job(session_factory, school)
    await create_candidate(session_factory, job, teacher, status="hired")

    await dispatcher.notify(_status_intent(job, teacher, status="shortlisted"))
    await dispatcher.process_queue()

    sent = email_channel.sent[0]
    assert sent["subject"] == "Application Update: Math Teacher at Lincoln High"
    assert "Congratulations" in sent["html"]


@pytest.mark.asyncio
async def test_application_status_back_to_new_is_cancelled(session_factory, dispatcher, email_channel):
    teacher = await create_teacher(session_factory)
    school = await create_school(session_factory)
    job = await create_job(session_factory, school)
    await create_candidate(session_factory, job, teacher, status="new")

    await dispatcher.notify(_status_intent(job, teacher))
    await dispatcher.process_queue()

    assert email_channel.sent == []
    assert (await _emails(session_factory))[0].status == "cancelled"


@pytest.mark.asyncio
async def test_new_application_email(session_factory, dispatcher, email_channel):
    teacher = await create_teacher(session_factory, full_name="Grace Hopper")
    school = await create_school(session_factory)
    job = await create_job(session_factory, school)
    application = await create_application(session_factory, job, teacher)

    await dispatcher.notify(new_application_intent(application, job, teacher))
    await dispatcher.process_queue()

    assert email_channel.sent[0]["subject"] == "New Application: Grace Hopper for Math Teacher"


@pytest.mark.asyncio
async def test_email_opt_out_cancels_without_sending(session_factory, dispatcher, email_channel):
    teacher = await create_teacher(session_factory)
    school = await create_school(session_factory)
    job = await create_job(session_factory, school)
    await create_candidate(session_factory, job, teacher, status="shortlisted")
    async with session_factory() as db:
        db.add(
            NotificationPreference(user_id=teacher.user_id, notification_type="application_status", email_enabled=False)
        )
        await db.commit()

    await dispatcher.notify(_status_intent(job, teacher))
    counts = await dispatcher.process_queue()

    assert counts["processed"] == 0
    assert email_channel.sent == []
    assert (await _emails(session_factory))[0].status == "cancelled"
    # In-app is a separate preference
    assert len(await _notifications(session_factory, teacher.user_id)) == 1


@pytest.mark.asyncio
async def test_failed_send_is_not_retried(session_factory, settings, clock):
    channel = FakeEmailChannel(fail_with="Email API returned 500: boom")
    dispatcher = NotificationDispatcher(session_factory, channel, settings, clock=clock)
    school = await create_school(session_factory)
    job = await create_job(session_factory, school)

    await dispatcher.notify(candidate_match_intent(job))
    first = await dispatcher.process_queue()
    second = await dispatcher.process_queue()

    assert first == {"processed": 1, "succeeded": 0, "failed": 1}
    assert second == {"processed": 0, "succeeded": 0, "failed": 0}
    assert len(channel.sent) == 1
    email = (await _emails(session_factory))[0]
    assert email.status == "failed"
    assert email.error_message == "Email API returned 500: boom"


@pytest.mark.asyncio
async def test_channel_exception_marks_row_failed(session_factory, settings, clock):
    class ExplodingChannel:
        async def send(self, to, subject, html):
            raise ConnectionError("smtp gone")

    dispatcher = NotificationDispatcher(session_factory, ExplodingChannel(), settings, clock=clock)
    school = await create_school(session_factory)
    job = await create_job(session_factory, school)

    await dispatcher.notify(candidate_match_intent(job))
    counts = await dispatcher.process_queue()

    assert counts["failed"] == 1
    assert (await _emails(session_factory))[0].status == "failed"


@pytest.mark.asyncio
async def test_malformed_template_data_marks_row_failed(session_factory, dispatcher, email_channel):
    async with session_factory() as db:
        db.add(
            EmailNotification(
                type="new_candidate_match",
                recipient_email="someone@test.com",
                template_data={"job_id": "not-a-uuid"},
            )
        )
        await db.commit()

    counts = await dispatcher.process_queue()

    assert counts == {"processed": 1, "succeeded": 0, "failed": 1}
    assert email_channel.sent == []


@pytest.mark.asyncio
async def test_claimed_row_is_processed_once(session_factory, dispatcher, email_channel):
    school = await create_school(session_factory)
    job = await create_job(session_factory, school)
    await dispatcher.notify(candidate_match_intent(job))
    email = (await _emails(session_factory))[0]

    assert await dispatcher._process_one(email.id) == "sent"
    assert await dispatcher._process_one(email.id) is None
    assert len(email_channel.sent) == 1


@pytest.mark.asyncio
async def test_batch_size_limits_each_run(session_factory, dispatcher, email_channel):
    school = await create_school(session_factory)
    for i in range(3):
        await dispatcher.notify(candidate_match_intent(await create_job(session_factory, school, title=f"Job {i}")))

    first = await dispatcher.process_queue(batch_size=2)
    second = await dispatcher.process_queue(batch_size=2)

    assert first["processed"] == 2
    assert second["processed"] == 1
    assert len(email_channel.sent) == 3


# --- Failure handling ---


class FlakyCommitFactory:
    """Session factory whose first ``failures`` sessions cannot commit."""

    def __init__(self, factory, failures=1):
        self.factory = factory
        self.failures = failures

    def __call__(self):
        session = self.factory()
        if self.failures:
            self.failures -= 1

            async def commit():
                raise OperationalError("INSERT INTO email_notifications", {}, Exception("database is locked"))

            session.commit = commit
        return session


@pytest.mark.asyncio
async def test_failed_enqueue_does_not_debounce_next_event(session_factory, email_channel, settings, clock):
    school = await create_school(session_factory)
    job = await create_job(session_factory, school)
    dispatcher = NotificationDispatcher(FlakyCommitFactory(session_factory), email_channel, settings, clock=clock)

    with pytest.raises(OperationalError):
        await dispatcher.notify(candidate_match_intent(job))
    clock.advance(5)

    assert await dispatcher.notify(candidate_match_intent(job))
    assert len(await _emails(session_factory)) == 1


@pytest.mark.asyncio
async def test_missing_recipient_does_not_hold_debounce_key(dispatcher):
    intent = NotificationIntent(kind="new_job_match", recipient_id=uuid.uuid4(), payload={})
    assert not await dispatcher.notify(intent)
    assert len(dispatcher.debounce) == 0


@pytest.mark.asyncio
async def test_bad_row_does_not_stop_the_batch(session_factory, dispatcher, email_channel):
    async with session_factory() as db:
        db.add(
            EmailNotification(
                type="new_candidate_match",
                recipient_email="someone@test.com",
                template_data={"job_id": 123},
                created_at=datetime.now(timezone.utc) - timedelta(minutes=5),
            )
        )
        await db.commit()
    school = await create_school(session_factory)
    job = await create_job(session_factory, school)
    await dispatcher.notify(candidate_match_intent(job))

    counts = await dispatcher.process_queue()

    assert counts == {"processed": 2, "succeeded": 1, "failed": 1}
    bad, good = await _emails(session_factory)
    assert bad.status == "failed"
    assert "replace" in bad.error_message
    assert good.status == "sent"
    assert len(email_channel.sent) == 1


@pytest.mark.asyncio
async def test_status_write_error_after_send_marks_row_failed(session_factory, dispatcher, email_channel, monkeypatch):
    school = await create_school(session_factory)
    job = await create_job(session_factory, school)
    await dispatcher.notify(candidate_match_intent(job))

    async def broken_mark(*args, **kwargs):
        raise OperationalError("UPDATE email_notifications", {}, Exception("connection reset"))

    monkeypatch.setattr(dispatcher, "_mark", broken_mark)
    counts = await dispatcher.process_queue()

    assert counts["failed"] == 1
    email = (await _emails(session_factory))[0]
    assert email.status == "failed"
    assert "connection reset" in email.error_message
    # Delivered once; a failed row is never sent again
    assert len(email_channel.sent) == 1
    assert await dispatcher.process_queue() == {"processed": 0, "succeeded": 0, "failed": 0}


@pytest.mark.asyncio
async def test_stale_claim_returns_to_pending(session_factory, dispatcher, email_channel, settings):
    school = await create_school(session_factory)
    stale_job = await create_job(session_factory, school, title="Stale")
    fresh_job = await create_job(session_factory, school, title="Fresh")
    await dispatcher.notify(candidate_match_intent(stale_job))
    await dispatcher.notify(candidate_match_intent(fresh_job))
    stale, fresh = await _emails(session_factory)

    now = datetime.now(timezone.utc)
    async with session_factory() as db:
        await db.execute(
            update(EmailNotification)
            .where(EmailNotification.id == stale.id)
            .values(status="processing", claimed_at=now - timedelta(seconds=settings.NOTIFICATION_CLAIM_TIMEOUT_SECONDS + 60))
        )
        await db.execute(
            update(EmailNotification).where(EmailNotification.id == fresh.id).values(status="processing", claimed_at=now)
        )
        await db.commit()

    counts = await dispatcher.process_queue()

    assert counts == {"processed": 1, "succeeded": 1, "failed": 0}
    statuses = {e.id: e.status for e in await _emails(session_factory)}
    assert statuses == {stale.id: "sent", fresh.id: "processing"}
    assert "Stale" in email_channel.sent[0]["subject"]
