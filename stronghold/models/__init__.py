from .user import User
from .membership import Membership, MembershipPackage
from .appointment import Appointment, Nutritionist, Trainer
from .reminder_dispatch_log import ReminderDispatchLog

__all__ = [
    "User",
    "Membership",
    "MembershipPackage",
    "Appointment",
    "Trainer",
    "Nutritionist",
    "ReminderDispatchLog",
]
