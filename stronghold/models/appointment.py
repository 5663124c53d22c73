from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from stronghold.db.base import Base


class Trainer(Base):
    __tablename__ = "trainers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    is_deleted = Column(Boolean, nullable=False, default=False)


class Nutritionist(Base):
    __tablename__ = "nutritionists"

    id = Column(Integer, primary_key=True, autoincrement=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    is_deleted = Column(Boolean, nullable=False, default=False)


class Appointment(Base):
    """A booked session with either a trainer or a nutritionist (or neither)."""
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    trainer_id = Column(Integer, ForeignKey("trainers.id"), nullable=True)
    nutritionist_id = Column(Integer, ForeignKey("nutritionists.id"), nullable=True)

    appointment_date = Column(DateTime, nullable=False)

    user = relationship("User", back_populates="appointments")
    trainer = relationship("Trainer")
    nutritionist = relationship("Nutritionist")

    __table_args__ = (
        Index("ix_appointments_appointment_date", "appointment_date"),
    )
