"""
Use case model: admin-authored guided-workflow template.
"""
from typing import Any, Dict
import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, String, Text

from ..database import Base
from ..utils.timeutils import utcnow


class UseCase(Base):
    __tablename__ = "use_cases"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=True, index=True)

    title = Column(String(255), nullable=False)
    type = Column(String(50), nullable=True)
    information_needed = Column(Text, nullable=True)
    steps = Column(Text, nullable=True)
    expected_result = Column(Text, nullable=True)
    next_question = Column(Text, nullable=True)

    process_map = Column(JSON, nullable=True)
    decision_logic = Column(JSON, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "title": self.title,
            "type": self.type,
            "information_needed": self.information_needed,
            "steps": self.steps,
            "expected_result": self.expected_result,
            "next_question": self.next_question,
            "process_map": self.process_map,
            "decision_logic": self.decision_logic,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<UseCase(id={self.id}, title={self.title})>"
