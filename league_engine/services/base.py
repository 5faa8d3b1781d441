"""
Base service class providing common functionality for all services.
"""

import logging
import time
from contextlib import contextmanager
from typing import Any, Callable, Generator, Tuple, Type

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

# Errors a fresh attempt can get past: sequence collisions and SQLite busy locks
RETRYABLE_ERRORS: Tuple[Type[Exception], ...] = (IntegrityError, OperationalError)

class BaseService:
    """Base class for all services with session management."""

    def __init__(self, session_factory):
        """
        Initialize base service with session factory.

        Args:
            session_factory: Session factory from Database class
        """
        self.session_factory = session_factory

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """Provide a transactional scope for database operations."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def execute_with_retry(self, func: Callable, max_retries: int = 3) -> Any:
        """Execute a function with automatic retry on transient database errors."""
        for attempt in range(max_retries):
            try:
                return func()
            except RETRYABLE_ERRORS as e:
                if attempt == max_retries - 1:
                    raise
                logger.warning(f"Retry attempt {attempt + 1} for {func.__name__}: {e}")
                time.sleep(0.1 * (2 ** attempt))  # Exponential backoff
