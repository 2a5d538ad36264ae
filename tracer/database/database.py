"""
SQLAlchemy engine and session factory for the trace store.
"""

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

from tracer.core.config import get_settings

# Seconds a writer waits on a locked SQLite file before failing
SQLITE_BUSY_TIMEOUT = 30


def build_engine(db_url: str):
    """
    Create an engine for the given database URL.

    SQLite connections get a busy timeout so concurrent writers queue on the
    file lock, and foreign keys are enforced on every connection.
    """
    connect_args = {}
    if db_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}

    new_engine = create_engine(db_url, connect_args=connect_args)

    if db_url.startswith("sqlite"):

        @event.listens_for(new_engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return new_engine


engine = build_engine(get_settings().db_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()
