# db/models.py
"""
SQLAlchemy ORM models for tickets, challenges, issuer automations and media.
"""
from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .database import Base


def _uuid() -> str:
    return str(uuid4())


# =============================================================================
# ENUMS
# =============================================================================

class IssuerType(str, Enum):
    COUNCIL = "COUNCIL"
    TFL = "TFL"
    PRIVATE_COMPANY = "PRIVATE_COMPANY"


class ChallengeType(str, Enum):
    LETTER = "LETTER"
    AUTO_CHALLENGE = "AUTO_CHALLENGE"


class ChallengeStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class IssuerAutomationStatus(str, Enum):
    """States of a learned recipe."""
    LEARNING = "LEARNING"
    PENDING_REVIEW = "PENDING_REVIEW"
    VERIFIED = "VERIFIED"
    NEEDS_HUMAN_HELP = "NEEDS_HUMAN_HELP"
    FAILED = "FAILED"


class MediaType(str, Enum):
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"


class MediaSource(str, Enum):
    TICKET = "TICKET"
    EVIDENCE = "EVIDENCE"
    SCREENSHOT = "SCREENSHOT"
    RECORDING = "RECORDING"


# =============================================================================
# MODELS
# =============================================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    phone_number = Column(String(32), nullable=True)
    # {"line1": ..., "line2": ..., "city": ..., "postcode": ...}
    address = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    vehicles = relationship("Vehicle", back_populates="user", cascade="all, delete-orphan")


class Vehicle(Base):
    __tablename__ = "vehicles"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    registration_number = Column(String(16), nullable=False)
    make = Column(String(64), nullable=True)
    model = Column(String(64), nullable=True)

    user = relationship("User", back_populates="vehicles")
    tickets = relationship("Ticket", back_populates="vehicle", cascade="all, delete-orphan")


class Ticket(Base):
    """A penalty charge notice."""
    __tablename__ = "tickets"

    id = Column(String(36), primary_key=True, default=_uuid)
    vehicle_id = Column(String(36), ForeignKey("vehicles.id"), nullable=False, index=True)
    pcn_number = Column(String(32), unique=True, nullable=False, index=True)
    issuer = Column(String(255), nullable=False)
    issuer_type = Column(SQLEnum(IssuerType), nullable=True)
    contravention_code = Column(String(8), nullable=True)
    initial_amount = Column(Integer, nullable=True)  # pence
    status = Column(String(64), nullable=True)
    issued_at = Column(DateTime, nullable=True)
    contravention_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    vehicle = relationship("Vehicle", back_populates="tickets")
    challenges = relationship("Challenge", back_populates="ticket", cascade="all, delete-orphan")
    media = relationship("Media", back_populates="ticket", cascade="all, delete-orphan")


class Challenge(Base):
    """One attempt to dispute a ticket."""
    __tablename__ = "challenges"

    id = Column(String(36), primary_key=True, default=_uuid)
    ticket_id = Column(String(36), ForeignKey("tickets.id"), nullable=False, index=True)
    type = Column(SQLEnum(ChallengeType), nullable=False, default=ChallengeType.AUTO_CHALLENGE)
    reason = Column(String(64), nullable=False)
    custom_reason = Column(Text, nullable=True)
    status = Column(SQLEnum(ChallengeStatus), nullable=False, default=ChallengeStatus.PENDING)
    # written through automation.results payload types only
    challenge_metadata = Column("metadata", JSON, nullable=True)
    submitted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    ticket = relationship("Ticket", back_populates="challenges")


class IssuerAutomation(Base):
    """A learned, replayable recipe for one issuer's portal."""
    __tablename__ = "issuer_automations"

    id = Column(String(36), primary_key=True, default=_uuid)
    issuer_id = Column(String(100), unique=True, nullable=False, index=True)
    issuer_name = Column(String(255), nullable=False)
    issuer_website = Column(String(500), nullable=True)
    status = Column(SQLEnum(IssuerAutomationStatus), nullable=False, default=IssuerAutomationStatus.LEARNING)
    steps = Column(JSON, nullable=True)
    challenge_url = Column(String(500), nullable=True)
    failure_reason = Column(Text, nullable=True)
    hetzner_job_id = Column(String(100), nullable=True)
    needs_account = Column(Boolean, default=False)
    captcha_type = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    verified_at = Column(DateTime, nullable=True)


class Media(Base):
    """Uploaded or scraped file, stored by URL."""
    __tablename__ = "media"

    id = Column(String(36), primary_key=True, default=_uuid)
    ticket_id = Column(String(36), ForeignKey("tickets.id"), nullable=True, index=True)
    letter_id = Column(String(36), nullable=True, index=True)
    url = Column(String(1000), nullable=False)
    type = Column(SQLEnum(MediaType), nullable=False, default=MediaType.IMAGE)
    source = Column(SQLEnum(MediaSource), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    ticket = relationship("Ticket", back_populates="media")
