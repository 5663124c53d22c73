"""
Read-side queries against the membership application's tables
"""
from datetime import date
from typing import List

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session, aliased, joinedload

from stronghold.models import Appointment, Membership, MembershipPackage, Nutritionist, Trainer, User
from stronghold.utils.timezone import day_bounds
from .schemas import DueItem


def find_memberships_expiring_on(db: Session, target_date: date) -> List[DueItem]:
    """Memberships whose end date falls on `target_date` (any time of day)."""
    start, end = day_bounds(target_date)
    stmt = (
        select(Membership)
        .join(Membership.user)
        .join(Membership.membership_package)
        .options(joinedload(Membership.user), joinedload(Membership.membership_package))
        .where(User.is_deleted.is_(False))
        .where(MembershipPackage.is_deleted.is_(False))
        .where(Membership.end_date >= start)
        .where(Membership.end_date < end)
        .order_by(Membership.id)
    )
    return [
        DueItem(
            entity_id=m.id,
            contact_email=m.user.email,
            contact_first_name=m.user.first_name,
            related_name=m.membership_package.package_name,
            event_at=m.end_date,
        )
        for m in db.execute(stmt).scalars().unique()
    ]


def _professional_name(appointment: Appointment) -> str:
    if appointment.trainer is not None:
        return f"trener {appointment.trainer.first_name} {appointment.trainer.last_name}"
    if appointment.nutritionist is not None:
        return f"nutricionist {appointment.nutritionist.first_name} {appointment.nutritionist.last_name}"
    return "strucnjak"


def find_appointments_on(db: Session, target_date: date) -> List[DueItem]:
    """Appointments on `target_date` whose member and professional are still active."""
    start, end = day_bounds(target_date)
    trainer = aliased(Trainer)
    nutritionist = aliased(Nutritionist)
    stmt = (
        select(Appointment)
        .join(Appointment.user)
        .outerjoin(trainer, Appointment.trainer_id == trainer.id)
        .outerjoin(nutritionist, Appointment.nutritionist_id == nutritionist.id)
        .options(
            joinedload(Appointment.user),
            joinedload(Appointment.trainer),
            joinedload(Appointment.nutritionist),
        )
        .where(User.is_deleted.is_(False))
        .where(or_(Appointment.trainer_id.is_(None), trainer.is_deleted.is_(False)))
        .where(or_(Appointment.nutritionist_id.is_(None), nutritionist.is_deleted.is_(False)))
        .where(and_(Appointment.appointment_date >= start, Appointment.appointment_date < end))
        .order_by(Appointment.id)
    )
    return [
        DueItem(
            entity_id=a.id,
            contact_email=a.user.email,
            contact_first_name=a.user.first_name,
            related_name=_professional_name(a),
            event_at=a.appointment_date,
        )
        for a in db.execute(stmt).scalars().unique()
    ]
