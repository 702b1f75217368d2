"""Database package"""

from partner_access.db.session import AsyncSessionLocal, engine, get_session_factory, init_db
from partner_access.models.base import Base

__all__ = ["Base", "AsyncSessionLocal", "engine", "get_session_factory", "init_db"]
