"""
tasks/base.py
Synchronous database access for Celery workers.
"""

from functools import lru_cache

from celery import Task
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from config.settings import settings


@lru_cache()
def _sync_sessionmaker() -> sessionmaker:
    # Async URL (postgresql+asyncpg://) becomes sync (postgresql+psycopg2://)
    engine = create_engine(settings.sync_database_url, pool_pre_ping=True)
    return sessionmaker(bind=engine, expire_on_commit=False)


def get_sync_session() -> Session:
    """Get a synchronous SQLAlchemy session (Celery runs sync by default)."""
    return _sync_sessionmaker()()


class DatabaseTask(Task):
    """Base class that provides a synchronous DB session for tasks."""
    abstract = True

    def get_session(self) -> Session:
        return get_sync_session()
