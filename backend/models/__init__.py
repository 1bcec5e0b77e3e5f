"""Database models package."""
from models.database import Base, get_session, close_db, get_pool_status, get_engine
from models.deal import Deal

__all__ = [
    "Base",
    "get_session",
    "close_db",
    "get_pool_status",
    "get_engine",
    "Deal",
]
