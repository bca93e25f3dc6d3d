"""Read-only database views.

The view tables live on their own MetaData so ``Base.metadata.create_all``
never tries to create them as plain tables. The DDL is applied by the
initial migration.
"""

from sqlalchemy import Boolean, Column, DateTime, Integer, MetaData, String, Table, Text, Uuid

from schoolmatch.core.database import JSONType

view_metadata = MetaData()

candidate_matches = Table(
    "candidate_matches",
    view_metadata,
    Column("id", Uuid, primary_key=True),
    Column("job_id", Uuid),
    Column("teacher_id", Uuid),
    Column("match_score", Integer),
    Column("match_reason", Text),
    Column("status", String(50)),
    Column("school_notes", Text),
    Column("created_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True)),
    Column("job_title", String(255)),
    Column("school_id", Uuid),
    Column("school_name", String(255)),
    Column("teacher_user_id", Uuid),
    Column("teacher_name", String(255)),
    Column("teacher_email", String(255)),
    Column("teacher_location", String(255)),
    Column("teacher_archetype", String(100)),
    Column("teacher_subjects", JSONType),
    Column("teacher_grade_levels", JSONType),
    Column("teacher_years_experience", String(50)),
    Column("teacher_profile_complete", Boolean),
    Column("teacher_photo_url", String(500)),
    Column("teacher_resume_url", String(500)),
    Column("application_id", Uuid),
    Column("application_status", String(50)),
)

CANDIDATE_MATCHES_VIEW_SQL = """
CREATE OR REPLACE VIEW candidate_matches AS
SELECT
    jc.id,
    jc.job_id,
    jc.teacher_id,
    jc.match_score,
    jc.match_reason,
    jc.status,
    jc.school_notes,
    jc.created_at,
    jc.updated_at,
    j.title AS job_title,
    j.school_id,
    COALESCE(NULLIF(j.school_name, ''), s.school_name) AS school_name,
    t.user_id AS teacher_user_id,
    t.full_name AS teacher_name,
    t.email AS teacher_email,
    t.location AS teacher_location,
    t.archetype AS teacher_archetype,
    t.subjects AS teacher_subjects,
    t.grade_levels AS teacher_grade_levels,
    t.years_experience AS teacher_years_experience,
    t.profile_complete AS teacher_profile_complete,
    t.profile_photo_url AS teacher_photo_url,
    t.resume_url AS teacher_resume_url,
    a.id AS application_id,
    a.status AS application_status
FROM job_candidates jc
JOIN jobs j ON j.id = jc.job_id
JOIN schools s ON s.id = j.school_id
JOIN teachers t ON t.id = jc.teacher_id
LEFT JOIN applications a ON a.job_id = jc.job_id AND a.teacher_id = jc.teacher_id
"""

DROP_CANDIDATE_MATCHES_VIEW_SQL = "DROP VIEW IF EXISTS candidate_matches"
