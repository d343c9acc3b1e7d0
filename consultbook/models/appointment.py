"""Appointment model definitions."""

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, func
from sqlalchemy.orm import relationship
from consultbook.database import Base


class Appointment(Base):
    """A booked consultation between a client and an advisor."""
    __tablename__ = "appointments"
    __table_args__ = (
        Index("idx_appointments_client_start", "client_id", "date_time"),
        Index("idx_appointments_advisor_start", "advisor_id", "date_time"),
        Index("idx_appointments_status", "status"),
        Index("idx_appointments_confirmation_deadline", "advisor_confirmation_expires"),
    )

    id = Column(Integer, primary_key=True)
    client_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    advisor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    date_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    duration = Column(Integer, nullable=False, default=30)
    status = Column(String, nullable=False, default="pending-advisor-confirmation")
    type = Column(String, nullable=False)
    short_description = Column(Text, nullable=False)
    notes = Column(Text, default="")
    consultation_summary = Column(Text)
    cancellation_reason = Column(Text)
    advisor_confirmation_expires = Column(DateTime)

    advices = Column(JSON, default=list)
    documents = Column(JSON, default=list)
    chat_log = Column(JSON, default=list)
    participant_status = Column(JSON, default=dict)

    follow_up_recommended = Column(Boolean, default=False)
    follow_up_date = Column(DateTime)
    follow_up_notes = Column(Text)

    payment_amount = Column(Numeric(10, 2))
    payment_status = Column(String)  # pending/completed/refunded
    payment_transaction_id = Column(String)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    client = relationship("User", foreign_keys=[client_id], lazy="joined")
    advisor = relationship("User", foreign_keys=[advisor_id], lazy="joined")

    # Every UPDATE checks and bumps the counter, so a concurrent writer
    # surfaces as StaleDataError instead of a lost update.
    __mapper_args__ = {"version_id_col": version}
