"""
Periodic due-item scanners (membership expiry, appointment reminders)
"""
import asyncio
import logging
import threading
from datetime import date, timedelta
from typing import Callable, List, Optional, Protocol, Sequence

from sqlalchemy.orm import Session

from stronghold.core.config import settings as core_settings
from stronghold.db.session import SessionLocal
from stronghold.utils.timezone import today_local
from .config import NotificationSettings
from .ledger import DispatchLedger
from .metrics import (
    scanner_cycle_failures_total,
    scanner_cycles_total,
    scanner_duplicates_skipped_total,
    scanner_item_failures_total,
    scanner_published_total,
)
from .schemas import DispatchKey, DueItem, OutboundMessage, ScanReport
from .store import find_appointments_on, find_memberships_expiring_on
from .templates import build_appointment_reminder_message, build_membership_expiry_message

logger = logging.getLogger(__name__)

# Reminders go out exactly this many days before the event date
REMINDER_OFFSETS_DAYS = (1, 3)


class Publisher(Protocol):
    def publish(self, message: OutboundMessage) -> None:
        ...


class DueItemScanner:
    """
    Finds entities whose event date is exactly N days away and enqueues one
    reminder per (entity, N), fenced by the dispatch ledger.

    A cycle is best-effort: a failure to build or publish one reminder is
    logged and counted, and the remaining matches are still processed. A
    store failure aborts the cycle; the loop logs it and tries again after
    the next interval.
    """

    def __init__(
        self,
        name: str,
        reminder_type: str,
        entity_type: str,
        find_due: Callable[[Session, date], List[DueItem]],
        build_message: Callable[[DueItem, int], OutboundMessage],
        publisher: Publisher,
        session_factory: Callable[[], Session] = SessionLocal,
        offsets: Sequence[int] = REMINDER_OFFSETS_DAYS,
        startup_delay: float = 30,
        interval: float = 24 * 60 * 60,
        today: Optional[Callable[[], date]] = None,
    ):
        self.name = name
        self.reminder_type = reminder_type
        self.entity_type = entity_type
        self.find_due = find_due
        self.build_message = build_message
        self.publisher = publisher
        self.session_factory = session_factory
        self.offsets = tuple(offsets)
        self.startup_delay = startup_delay
        self.interval = interval
        self._today = today or (lambda: today_local(core_settings.DEFAULT_TIMEZONE))

        self.state = "idle"
        self.last_report: Optional[ScanReport] = None
        self._task: Optional[asyncio.Task] = None
        self._cycle: Optional[asyncio.Future] = None
        self._stop_requested = threading.Event()

    def run_cycle(self, today: Optional[date] = None) -> ScanReport:
        today = today or self._today()
        report = ScanReport(scanner=self.name, today=today)
        scanner_cycles_total.labels(scanner=self.name).inc()
        logger.info(f"[{self.name}] Checking for {self.entity_type.lower()} reminders due from {today}")

        try:
            for offset in self.offsets:
                if self._stop_requested.is_set():
                    break
                self.state = f"scanning(offset={offset})"
                self._scan_offset(today, offset, report)
        finally:
            self.state = "idle"

        self.last_report = report
        logger.info(
            f"[{self.name}] Cycle done: matched={report.matched} published={report.published} "
            f"skipped={report.skipped} failed={report.failed}"
        )
        return report

    def _scan_offset(self, today: date, offset: int, report: ScanReport) -> None:
        target = today + timedelta(days=offset)
        db = self.session_factory()
        try:
            items = self.find_due(db, target)
            report.matched += len(items)
            logger.info(f"[{self.name}] Found {len(items)} due in {offset} day(s) ({target})")

            ledger = DispatchLedger(db)
            for item in items:
                if self._stop_requested.is_set():
                    logger.info(f"[{self.name}] Stop requested; leaving remaining reminders for the next cycle")
                    return
                key = DispatchKey(
                    reminder_type=self.reminder_type,
                    entity_type=self.entity_type,
                    entity_id=item.entity_id,
                    days_before_event=offset,
                    target_date=item.event_at.date(),
                )
                try:
                    message = self.build_message(item, offset)
                    sent = ledger.dispatch_once(key, lambda: self.publisher.publish(message))
                except Exception:
                    db.rollback()
                    report.failed += 1
                    scanner_item_failures_total.labels(scanner=self.name).inc()
                    logger.exception(
                        f"[{self.name}] Failed to queue {offset}-day reminder for "
                        f"{self.entity_type} {item.entity_id} ({item.contact_email})"
                    )
                    continue

                if sent:
                    report.published += 1
                    scanner_published_total.labels(scanner=self.name).inc()
                    logger.info(f"[{self.name}] Queued {offset}-day reminder for {item.contact_email}")
                else:
                    report.skipped += 1
                    scanner_duplicates_skipped_total.labels(scanner=self.name).inc()
        finally:
            db.close()

    async def _run_loop(self) -> None:
        await asyncio.sleep(self.startup_delay)
        while True:
            try:
                # The cycle thread cannot be interrupted; stop() waits for it instead
                self._cycle = asyncio.ensure_future(asyncio.to_thread(self.run_cycle))
                await asyncio.shield(self._cycle)
            except asyncio.CancelledError:
                raise
            except Exception:
                scanner_cycle_failures_total.labels(scanner=self.name).inc()
                logger.exception(f"[{self.name}] Error during scan cycle")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stop_requested.clear()
        self._task = asyncio.create_task(self._run_loop(), name=self.name)
        logger.info(
            f"[{self.name}] Started (first scan in {self.startup_delay}s, then every {self.interval}s)"
        )

    async def stop(self) -> None:
        """Cancel the loop and wait for an in-flight cycle to reach a safe point.

        The cycle stops before its next reminder; the one being published is
        allowed to finish. The publisher is left open for its owner to close.
        """
        if self._task is None:
            return
        self._stop_requested.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

        cycle, self._cycle = self._cycle, None
        if cycle is not None and not cycle.done():
            logger.info(f"[{self.name}] Waiting for the running scan cycle to finish")
            try:
                await cycle
            except Exception:
                logger.exception(f"[{self.name}] Error during scan cycle")
        logger.info(f"[{self.name}] Stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()


def build_membership_expiry_scanner(
    settings: NotificationSettings,
    publisher: Publisher,
    session_factory: Callable[[], Session] = SessionLocal,
) -> DueItemScanner:
    return DueItemScanner(
        name="MembershipExpiryScanner",
        reminder_type="membership-expiry",
        entity_type="Membership",
        find_due=find_memberships_expiring_on,
        build_message=build_membership_expiry_message,
        publisher=publisher,
        session_factory=session_factory,
        startup_delay=settings.SCANNER_STARTUP_DELAY_SECONDS,
        interval=settings.SCANNER_INTERVAL_SECONDS,
    )


def build_appointment_reminder_scanner(
    settings: NotificationSettings,
    publisher: Publisher,
    session_factory: Callable[[], Session] = SessionLocal,
) -> DueItemScanner:
    return DueItemScanner(
        name="AppointmentReminderScanner",
        reminder_type="appointment",
        entity_type="Appointment",
        find_due=find_appointments_on,
        build_message=build_appointment_reminder_message,
        publisher=publisher,
        session_factory=session_factory,
        startup_delay=settings.SCANNER_STARTUP_DELAY_SECONDS,
        interval=settings.SCANNER_INTERVAL_SECONDS,
    )
