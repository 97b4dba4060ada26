"""
Customer models.

``Customer`` is the operator's account holder (the company using the desk).
``EndCustomer`` is the party on whose behalf a task exists.
"""
from typing import Any, Dict
import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String

from ..database import Base
from ..utils.timeutils import utcnow


class Customer(Base):
    __tablename__ = "customers"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    industry = Column(String(100), nullable=True)
    email = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "industry": self.industry,
            "email": self.email,
            "is_active": self.is_active,
        }


class EndCustomer(Base):
    """End customer record (tenant, resident, caller)."""
    __tablename__ = "endkunden"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=True, index=True)
    external_id = Column(String(100), nullable=True)

    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=False)
    address = Column(String(255), nullable=True)
    postal_code = Column(String(20), nullable=True)
    city = Column(String(100), nullable=True)
    building = Column(String(100), nullable=True)
    apartment = Column(String(100), nullable=True)
    location = Column(String(100), nullable=True)  # position inside the building, e.g. "2. OG links"

    created_at = Column(DateTime, default=utcnow, nullable=False)

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "external_id": self.external_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "address": self.address,
            "postal_code": self.postal_code,
            "city": self.city,
            "building": self.building,
            "apartment": self.apartment,
            "location": self.location,
        }


class EndCustomerContact(Base):
    """Contact person responsible for a customer's end customers (caretaker, property manager)."""
    __tablename__ = "endkunden_contacts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=True, index=True)

    name = Column(String(255), nullable=False)
    role = Column(String(100), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "name": self.name,
            "role": self.role,
            "email": self.email,
            "phone": self.phone,
        }
