"""User model definitions."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String, func

from kcs_portal.database import Base

ROLE_FLAGS = {
    'admin': 'is_admin',
    'lead': 'is_lead',
    'coach': 'is_coach',
    'manager': 'is_manager',
}


class User(Base):
    """Represents a portal account. Roles are independent flags, not a hierarchy."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    ms_user_id = Column(String, unique=True, nullable=True)
    email = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String)
    name = Column(String, nullable=False)
    is_coach = Column(Boolean, nullable=False, default=False)
    is_lead = Column(Boolean, nullable=False, default=False)
    is_admin = Column(Boolean, nullable=False, default=False)
    is_manager = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, server_default=func.current_timestamp())
    updated_at = Column(DateTime, server_default=func.current_timestamp(), onupdate=func.current_timestamp())
    deleted_at = Column(DateTime, nullable=True)

    def has_role(self, role: str) -> bool:
        flag = ROLE_FLAGS.get(role)
        return bool(flag and getattr(self, flag))
