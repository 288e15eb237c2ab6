"""
Database configuration and session management.
"""

from sqlmodel import SQLModel, create_engine, Session
from sqlalchemy import event
from sqlalchemy.engine import make_url
from contextlib import contextmanager
from typing import Generator
import logging
import os

# Import all models to ensure they are registered with SQLModel
from quotedesk.models import Account, Opportunity, Quote, AutomationRun

logger = logging.getLogger("quotedesk")

# Database URL - defaults to SQLite for development
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./data/quotedesk.db")


def configure_sqlite(sqlite_engine):
    """
    Let SQLAlchemy own transaction boundaries on pysqlite so SAVEPOINTs work.

    The ingestion gateway inserts natural-key rows inside savepoints; without
    this, pysqlite's implicit transaction handling breaks begin_nested().
    """
    @event.listens_for(sqlite_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return sqlite_engine


# Create engine
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, echo=False, connect_args=connect_args)
if DATABASE_URL.startswith("sqlite"):
    configure_sqlite(engine)


def create_db_and_tables(bind=None):
    """Create database tables."""
    SQLModel.metadata.create_all(bind or engine)


def get_session() -> Generator[Session, None, None]:
    """Get database session."""
    with Session(engine) as session:
        yield session


@contextmanager
def session_scope():
    """Session for work done outside a request (adapters, background callers)."""
    with Session(engine) as session:
        yield session


def initialize_database():
    """Initialize database with tables."""
    url = make_url(DATABASE_URL)
    if url.drivername.startswith("sqlite") and url.database and url.database != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(url.database)), exist_ok=True)
    logger.info("Creating database tables...")
    create_db_and_tables()
    logger.info("Database initialization complete")
