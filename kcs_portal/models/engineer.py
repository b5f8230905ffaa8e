"""Engineer and coach assignment model definitions."""

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import relationship

from kcs_portal.database import Base


class Engineer(Base):
    """A support engineer who receives coaching evaluations."""
    __tablename__ = "engineers"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    lead_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, server_default=func.current_timestamp())

    lead = relationship("User", lazy="joined")
    assignments = relationship("CoachAssignment", back_populates="engineer")

    @property
    def lead_name(self) -> str | None:
        return self.lead.name if self.lead else None

    @property
    def coach_name(self) -> str | None:
        for assignment in self.assignments:
            if assignment.is_active:
                return assignment.coach_name
        return None


class CoachAssignment(Base):
    """Pairs an engineer with a coaching user; active while end_date is unset."""
    __tablename__ = "engineer_coach_assignments"

    id = Column(Integer, primary_key=True)
    engineer_id = Column(Integer, ForeignKey("engineers.id"), nullable=False)
    coach_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, server_default=func.current_timestamp())

    engineer = relationship("Engineer", back_populates="assignments", lazy="joined")
    coach = relationship("User", lazy="joined")

    @property
    def engineer_name(self) -> str | None:
        return self.engineer.name if self.engineer else None

    @property
    def coach_name(self) -> str | None:
        return self.coach.name if self.coach else None
