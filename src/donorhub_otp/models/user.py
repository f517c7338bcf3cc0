"""SQLAlchemy User model."""

from datetime import datetime

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from donorhub_otp.models.base import Base, UTCDateTime, utcnow


class User(Base):
    """A registered DonorHub account.

    Rows are only created once the email address has been proven through
    a verified OTP.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(256), nullable=False)
    user_type: Mapped[str] = mapped_column(String(32), nullable=False, default="donor")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r} type={self.user_type!r}>"
