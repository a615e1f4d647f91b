import logging
from contextlib import contextmanager
from typing import Generator, Optional, Type

from sqlalchemy import MetaData, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from billex.config.billex_config import BillexConfig

# Configure logging
logger = logging.getLogger(__name__)

metadata = MetaData()
Base = declarative_base(metadata=metadata)


def get_base() -> Type:
    """
    Get the base class for declarative models

    Returns:
        Base class for declarative models
    """
    return Base


class Database:
    """
    Database connection manager for Billex

    Holds issued-invoice records and async job bookkeeping. Works with
    SQLite (file or in-memory) and PostgreSQL URLs.
    """

    def __init__(self, url: Optional[str] = None, config: Optional[BillexConfig] = None, echo: Optional[bool] = None):
        """
        Initialize database connection

        Args:
            url: SQLAlchemy URL; defaults to database.url from configuration
            config: BillexConfig instance
            echo: Log SQL statements
        """
        self.config = config or BillexConfig()
        self.url = url or self.config.get('database.url', 'sqlite:///billex.db')
        echo = bool(self.config.get('database.echo', False)) if echo is None else echo

        self.engine: Engine = self._create_engine(self.url, echo)
        self.Session = sessionmaker(
            bind=self.engine,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False
        )

    @staticmethod
    def _create_engine(url: str, echo: bool) -> Engine:
        if url.startswith('sqlite'):
            options = {'connect_args': {'check_same_thread': False}}
            if url in ('sqlite://', 'sqlite:///:memory:'):
                # One shared connection so every session sees the same in-memory database
                options['poolclass'] = StaticPool
            engine = create_engine(url, echo=echo, **options)

            @event.listens_for(engine, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

            return engine

        return create_engine(url, echo=echo, pool_pre_ping=True)

    def create_all(self) -> None:
        """Initialize database schema"""
        # Register models on the metadata
        from billex.db import models  # noqa: F401
        Base.metadata.create_all(self.engine)
        logger.info("Database schema initialized")

    def drop_all(self) -> None:
        """Drop all tables"""
        Base.metadata.drop_all(self.engine)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Get a database session (no implicit commit)

        Yields:
            SQLAlchemy session
        """
        session = self.Session()
        try:
            yield session
        finally:
            session.close()

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        """
        Get a database session with transaction management

        Commits on success, rolls back and re-raises on error.

        Yields:
            SQLAlchemy session
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database transaction error: {str(e)}")
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
