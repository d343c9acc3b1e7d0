"""User model definitions."""

from sqlalchemy import JSON, Column, Integer, Numeric, String
from consultbook.database import Base


class User(Base):
    """Represents a client, advisor or admin account."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True)
    hashed_password = Column(String)
    role = Column(String)  # client/advisor/admin
    first_name = Column(String)
    last_name = Column(String)
    preferred_language = Column(String, default="en")
    consultation_fee = Column(Numeric(10, 2))
    # Weekly schedule, see consultbook.scheduling.availability
    availability = Column(JSON, default=list)

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)
