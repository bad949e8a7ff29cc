import enum
import uuid

from sqlalchemy import Column, String, DateTime, Enum as SQLEnum

from telehealth.database import Base
from telehealth.utils.clock import utcnow


class UserRole(str, enum.Enum):
    PATIENT = "PATIENT"
    DOCTOR = "DOCTOR"
    ADMIN = "ADMIN"


class User(Base):
    """Account record owned by the identity provider; read-only to this service."""
    __tablename__ = "users"

    id = Column(String, primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=True)
    role = Column(SQLEnum(UserRole, name="user_role"), nullable=False, default=UserRole.PATIENT)

    created_at = Column(DateTime, nullable=False, default=utcnow)
