"""Payment model definitions."""

from sqlalchemy import Column, DateTime, Numeric, String, func
from consultbook.database import Base


class Payment(Base):
    """A payment record referenced by an appointment's transaction id."""
    __tablename__ = "payments"

    id = Column(String, primary_key=True)
    amount = Column(Numeric(10, 2))
    status = Column(String, nullable=False, default="pending")  # pending/completed/refunded
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
