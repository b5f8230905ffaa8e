"""
Dependency wiring for the FastAPI app.
"""

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from kcs_portal.database import ConnectionManager


def get_db_manager(request: Request) -> ConnectionManager:
    """Return the connection manager the application factory attached to the app."""
    return request.app.state.db_manager


def get_db(manager: ConnectionManager = Depends(get_db_manager)):
    db: Session = manager.session()
    try:
        yield db
    finally:
        db.close()
