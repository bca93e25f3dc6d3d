import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from schoolmatch.core.database import Base, JSONType

ALL_GRADES = "All Grades"

EMPLOYMENT_TYPES = ("Full-time", "Part-time", "Contract", "Temporary", "Substitute")


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    school_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("schools.id"))
    title: Mapped[str] = mapped_column(String(255))
    department: Mapped[str] = mapped_column(String(255), default="")
    subject: Mapped[str] = mapped_column(String(255), default="")
    grade_level: Mapped[str] = mapped_column(String(100), default="")
    job_type: Mapped[str] = mapped_column(String(50), default="Full-time")
    location: Mapped[str] = mapped_column(String(255), default="")
    salary: Mapped[str] = mapped_column(String(100), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    requirements: Mapped[str] = mapped_column(Text, default="")
    benefits: Mapped[str] = mapped_column(Text, default="")
    school_name: Mapped[str] = mapped_column(String(255), default="")
    school_logo: Mapped[str | None] = mapped_column(String(500), nullable=True)
    archetype_tags: Mapped[list] = mapped_column(JSONType, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    posted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    school = relationship("School", back_populates="jobs")
