"""Manager assignment model definitions."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, func
from sqlalchemy.orm import relationship

from kcs_portal.database import Base


class ManagerAssignment(Base):
    """Links a manager to a user they oversee. Soft-deleted on removal."""
    __tablename__ = "manager_assignments"

    id = Column(Integer, primary_key=True)
    manager_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    assigned_to = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, server_default=func.current_timestamp())
    deleted_at = Column(DateTime, nullable=True)

    manager = relationship("User", foreign_keys=[manager_id], lazy="joined")
    user = relationship("User", foreign_keys=[assigned_to], lazy="joined")
