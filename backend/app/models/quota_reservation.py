"""QuotaReservation model - bytes held against a user's quota by an in-flight upload batch."""
import uuid
from sqlalchemy import BigInteger, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from app.models.base import Base, TimestampMixin, UserMixin


class QuotaReservation(Base, TimestampMixin, UserMixin):
    __tablename__ = "quota_reservations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    # Already included in the owner's storage_used until the batch settles.
    num_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
