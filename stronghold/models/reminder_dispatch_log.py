from sqlalchemy import Column, Date, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from stronghold.db.base import Base


class ReminderDispatchLog(Base):
    """Idempotency ledger for reminder emails.

    One row per (reminder type, entity, days-before, target date) whose
    message has been durably enqueued. Rows are never updated or deleted;
    the unique constraint stops a later scan cycle (or a second scheduler
    instance) from publishing the same reminder again.
    """
    __tablename__ = "reminder_dispatch_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reminder_type = Column(String(50), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Integer, nullable=False)
    days_before_event = Column(Integer, nullable=False)
    target_date = Column(Date, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint(
            "reminder_type",
            "entity_type",
            "entity_id",
            "days_before_event",
            "target_date",
            name="uq_reminder_dispatch_logs_key",
        ),
    )
