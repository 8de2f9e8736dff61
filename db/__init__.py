# db/__init__.py
"""
Package exports for the db package.
"""
from .database import Base, SessionLocal, engine, get_db, init_db
from .models import (
    Challenge,
    ChallengeStatus,
    ChallengeType,
    IssuerAutomation,
    IssuerAutomationStatus,
    IssuerType,
    Media,
    MediaSource,
    MediaType,
    Ticket,
    User,
    Vehicle,
)

__all__ = [
    "Base", "SessionLocal", "engine", "get_db", "init_db",
    "Challenge", "ChallengeStatus", "ChallengeType",
    "IssuerAutomation", "IssuerAutomationStatus", "IssuerType",
    "Media", "MediaSource", "MediaType",
    "Ticket", "User", "Vehicle",
]
