"""
Lead store engine + session factory.

Postgres in production, SQLite for local dev and tests. Engines apply each
lead's effects inside a SAVEPOINT, so the SQLite driver is switched to
explicit BEGIN handling; pysqlite's implicit transactions otherwise release
savepoints as commits.
"""
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from leadflow.config import DATABASE_URL


class Base(DeclarativeBase):
    pass


def build_engine(url):
    """Engine for the lead store with SAVEPOINT-safe settings for either backend."""
    # Hosted Postgres often hands out postgres:// but SQLAlchemy 2.x requires postgresql://
    url = url.replace('postgres://', 'postgresql://', 1)

    if not url.startswith('sqlite'):
        return create_engine(url, pool_pre_ping=True, pool_size=5, max_overflow=10)

    engine = create_engine(url, connect_args={'check_same_thread': False})

    @event.listens_for(engine, 'connect')
    def _disable_implicit_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _emit_begin(conn):
        conn.exec_driver_sql('BEGIN')

    return engine


engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine)


def get_session():
    """New lead-store session. Callers own commit/rollback and close()."""
    return SessionLocal()
