from schoolmatch.models.application import Application
from schoolmatch.models.email_notification import EmailNotification
from schoolmatch.models.job import Job
from schoolmatch.models.job_candidate import JobCandidate
from schoolmatch.models.notification import Notification
from schoolmatch.models.notification_preference import NotificationPreference
from schoolmatch.models.school import School
from schoolmatch.models.teacher import Teacher
from schoolmatch.models.teacher_job_match import TeacherJobMatch
from schoolmatch.models.user import User

__all__ = [
    "User",
    "School",
    "Teacher",
    "Job",
    "JobCandidate",
    "TeacherJobMatch",
    "Application",
    "Notification",
    "EmailNotification",
    "NotificationPreference",
]
