from fastapi import Request
from sqlalchemy.orm import Session

from .auditor import StalenessAuditor
from .config import Settings
from .store import DeviceStore


def get_db(request: Request) -> Session:
    """Database dependency for getting a session."""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_store(request: Request) -> DeviceStore:
    return request.app.state.store


def get_auditor(request: Request) -> StalenessAuditor:
    return request.app.state.auditor


def get_settings(request: Request) -> Settings:
    return request.app.state.settings
