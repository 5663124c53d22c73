import logging
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stronghold.models.reminder_dispatch_log import ReminderDispatchLog
from .schemas import DispatchKey

logger = logging.getLogger(__name__)


class DispatchLedger:
    """Check-and-record fence around a reminder publish.

    The claim row is flushed before publishing, so the unique constraint
    rejects a concurrent scanner, and committed only after the publish
    returned, so a failed publish leaves nothing behind and the reminder is
    retried on the next cycle.
    """

    def __init__(self, db: Session):
        self.db = db

    def has_dispatched(self, key: DispatchKey) -> bool:
        stmt = (
            select(ReminderDispatchLog.id)
            .where(ReminderDispatchLog.reminder_type == key.reminder_type)
            .where(ReminderDispatchLog.entity_type == key.entity_type)
            .where(ReminderDispatchLog.entity_id == key.entity_id)
            .where(ReminderDispatchLog.days_before_event == key.days_before_event)
            .where(ReminderDispatchLog.target_date == key.target_date)
            .limit(1)
        )
        return self.db.execute(stmt).first() is not None

    def dispatch_once(self, key: DispatchKey, publish: Callable[[], None]) -> bool:
        """Run `publish` unless `key` is already recorded. Returns True if it ran."""
        if self.has_dispatched(key):
            return False

        self.db.add(
            ReminderDispatchLog(
                reminder_type=key.reminder_type,
                entity_type=key.entity_type,
                entity_id=key.entity_id,
                days_before_event=key.days_before_event,
                target_date=key.target_date,
            )
        )
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            logger.info(
                f"[Ledger] Reminder log already exists ({key.entity_type} {key.entity_id}, "
                f"days={key.days_before_event}, target={key.target_date})"
            )
            return False

        try:
            publish()
        except Exception:
            self.db.rollback()
            raise

        self.db.commit()
        return True
