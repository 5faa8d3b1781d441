from contextlib import contextmanager
from typing import Optional

from sqlalchemy.orm import Session

from league_engine.database.models import AdminUser
from league_engine.utils.exceptions import StateError


class BaseOperations:
    """Shared session handling for operations classes built on a Database."""

    def __init__(self, database):
        """Initialize with database instance"""
        self.db = database

    @contextmanager
    def _get_session_context(self, session: Optional[Session] = None):
        """
        Provides a session context. Uses the provided session if available,
        otherwise opens a transaction that commits on success.
        """
        if session is not None:
            # If a session is provided, we do not manage its lifecycle
            yield session
        else:
            with self.db.transaction() as new_session:
                yield new_session

    @staticmethod
    def _require_admin(session: Session, admin_id: str) -> AdminUser:
        """
        Load an active admin.

        Raises:
            StateError: If the admin does not exist or is inactive
        """
        admin = session.get(AdminUser, admin_id) if admin_id else None
        if admin is None or not admin.is_active:
            raise StateError(f"Admin {admin_id} does not exist or is inactive")
        return admin
