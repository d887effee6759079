"""Import all models so SQLAlchemy metadata knows about them."""
from app.models.base import Base
from app.models.user import User
from app.models.file_record import FileRecord
from app.models.share_link import ShareLink, ShareAccessLog
from app.models.job import Job
from app.models.quota_reservation import QuotaReservation

__all__ = [
    "Base",
    "User", "FileRecord", "ShareLink", "ShareAccessLog", "Job", "QuotaReservation",
]
