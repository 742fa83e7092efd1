import logging
import os
from contextlib import contextmanager
from typing import Generator, Optional
from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from aura_rewards.config import settings
from aura_rewards.models.db import Base

logger = logging.getLogger(__name__)

class Database:
    """Database connection and session manager shared by the bot, the web API and the flush thread"""

    def __init__(self):
        self._engine = None
        self._SessionLocal: Optional[sessionmaker[Session]] = None

    def _engine_kwargs(self, connection_string: str) -> dict:
        url = make_url(connection_string)
        if url.get_backend_name() != "sqlite":
            return {"pool_pre_ping": True, "pool_recycle": 300}

        kwargs = {"connect_args": {"check_same_thread": False}}
        if not url.database or url.database == ":memory:":
            # One shared connection, otherwise every session sees its own empty database
            kwargs["poolclass"] = StaticPool
        else:
            data_dir = os.path.dirname(url.database)
            if data_dir and not os.path.exists(data_dir):
                os.makedirs(data_dir, exist_ok=True)
        return kwargs

    def init(self, connection_string: Optional[str] = None) -> None:
        """Initialize database connection and create tables."""
        if self._engine:
            logger.info("Database already initialized.")
            return
        try:
            connection_string = connection_string or settings.DATABASE_URL
            self._engine = create_engine(connection_string, **self._engine_kwargs(connection_string))

            inspector = inspect(self._engine)
            existing_tables = inspector.get_table_names()
            logger.debug(f"Existing tables before create_all: {existing_tables}")

            # checkfirst=True handles existing tables
            Base.metadata.create_all(self._engine, checkfirst=True)

            self._SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self._engine, expire_on_commit=False)
            logger.info("Database initialized successfully and tables ensured.")

        except SQLAlchemyError as e:
            logger.error(f"Database initialization failed: {e}")
            raise
        except Exception as e:
            logger.error(f"An unexpected error occurred during database initialization: {e}")
            raise

    @property
    def initialized(self) -> bool:
        return self._SessionLocal is not None

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        if not self._SessionLocal:
            logger.error("Database not initialized. Call init() first.")
            raise RuntimeError("Database not initialized. Call init() first.")

        session = self._SessionLocal()
        try:
            yield session
            session.commit()
            logger.debug("DB Session committed.")
        except Exception as e:
            logger.error(f"DB Session error, rolling back: {e}")
            session.rollback()
            raise
        finally:
            session.close()
            logger.debug("DB Session closed.")

    def dispose(self) -> None:
        if self._engine:
            self._engine.dispose()
            self._engine = None
            self._SessionLocal = None
            logger.info("Database engine disposed.")

# Global database instance
db = Database()
