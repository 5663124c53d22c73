from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import relationship

from stronghold.db.base import Base


class MembershipPackage(Base):
    __tablename__ = "membership_packages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    package_name = Column(String(100), nullable=False)
    package_price = Column(Numeric(18, 2), nullable=True)
    is_deleted = Column(Boolean, nullable=False, default=False)


class Membership(Base):
    """A member's subscription to a package for a [start_date, end_date] period.

    end_date is stored as the gym's local wall-clock time (naive datetime);
    the expiry scanner matches on its calendar day.
    """
    __tablename__ = "memberships"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    membership_package_id = Column(Integer, ForeignKey("membership_packages.id"), nullable=False)

    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)

    user = relationship("User", back_populates="memberships")
    membership_package = relationship("MembershipPackage")

    __table_args__ = (
        Index("ix_memberships_end_date", "end_date"),
    )
