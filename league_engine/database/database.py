from contextlib import contextmanager
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from league_engine.config import Config
from league_engine.database.models import Base
from league_engine.utils.logger import setup_logger

class Database:
    def __init__(self, database_url: Optional[str] = None):
        self.logger = setup_logger(__name__)
        self.database_url = database_url or Config.DATABASE_URL
        self.engine = None
        self.session_factory = None

    def initialize(self, seed_defaults: bool = True):
        """Initialize the database connection and create tables"""
        self.logger.info("Initializing database...")

        engine_kwargs = {'echo': Config.DATABASE_ECHO, 'future': True}
        if self.database_url.startswith('sqlite'):
            # Worker threads share the engine; wait on SQLite's write lock instead of failing
            engine_kwargs['connect_args'] = {'check_same_thread': False, 'timeout': 30}
            if ':memory:' in self.database_url or self.database_url == 'sqlite://':
                engine_kwargs['poolclass'] = StaticPool

        self.engine = create_engine(self.database_url, **engine_kwargs)

        if self.engine.dialect.name == 'sqlite':
            event.listen(self.engine, 'connect', _enable_sqlite_foreign_keys)

        self.session_factory = sessionmaker(
            bind=self.engine,
            expire_on_commit=False
        )

        Base.metadata.create_all(self.engine)
        self.logger.info("Database initialized successfully")

        if seed_defaults:
            self.initialize_default_data()

    def initialize_default_data(self):
        """Publish the first rating parameters version if none exists"""
        from league_engine.services.rating_parameters import RatingParametersService

        RatingParametersService(self.session_factory).seed_defaults()

    @contextmanager
    def get_session(self):
        """Get a database session"""
        session = self.session_factory()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def transaction(self):
        """
        Create a transaction boundary for atomic operations.

        All operations within the context will be committed together on success,
        or rolled back together on failure.

        Usage:
            with db.transaction() as session:
                recorder.record(match, session=session)
                aggregator.recompute_division(division_id, season_id, session=session)
                # All operations commit together here

        Important: The caller is responsible for passing the yielded session to
        all participating operations. Exceptions must be allowed to propagate
        out of the context for rollback to occur.
        """
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def close(self):
        """Close database connections"""
        if self.engine:
            self.engine.dispose()
            self.logger.info("Database connections closed")


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
