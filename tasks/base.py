"""
tasks/base.py
Synchronous database access for Celery tasks (Celery runs sync by default).
"""

from functools import lru_cache

from celery import Task
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from config.settings import settings


def sync_database_url(url: str) -> str:
    """Convert the async URL (postgresql+asyncpg://) to its sync driver (postgresql+psycopg2://)."""
    return url.replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")


@lru_cache()
def _session_factory() -> sessionmaker:
    engine = create_engine(sync_database_url(settings.DATABASE_URL), pool_pre_ping=True)
    return sessionmaker(bind=engine)


class DatabaseTask(Task):
    """Base class that provides a synchronous DB session for tasks."""
    abstract = True

    def get_session(self) -> Session:
        return _session_factory()()
