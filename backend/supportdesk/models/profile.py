"""
User profile model.
"""
from enum import Enum
from typing import Any, Dict
import uuid

from sqlalchemy import Boolean, Column, DateTime, String

from ..database import Base
from ..utils.timeutils import utcnow


class UserRole(str, Enum):
    AGENT = "agent"
    ADMIN = "admin"
    SUPERVISOR = "supervisor"
    CUSTOMER = "customer"


class Profile(Base):
    """Application user (agent, admin, supervisor or customer login)."""
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    full_name = Column(String(255), nullable=True)
    email = Column(String(255), unique=True, nullable=False)
    role = Column(String(20), nullable=False, default=UserRole.AGENT.value)
    password_hash = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "full_name": self.full_name,
            "email": self.email,
            "role": self.role,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<Profile(id={self.id}, email={self.email}, role={self.role})>"
