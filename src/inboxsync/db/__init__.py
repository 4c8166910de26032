"""Database module for inboxsync.

Exports:
- Base: SQLAlchemy declarative base
- models: All ORM models
- session: Async session management
"""

from inboxsync.db.models import Base
from inboxsync.db.session import db_session, get_db, get_session_factory

__all__ = ["Base", "db_session", "get_db", "get_session_factory"]
