"""
Database engine, session factory and schema bootstrap

The job queue claims rows with conditional UPDATEs from several worker
processes, so SQLite connections run in WAL mode with a busy timeout.
"""
import os
from typing import List, Tuple

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import NullPool

from marketsync.config import get_settings
from marketsync.utils.logger import log

settings = get_settings()


def resolve_database_url(url: str) -> str:
    """Absolute path for relative SQLite URLs so a changed cwd can't split the database"""
    if url.startswith("sqlite:///") and not url.startswith("sqlite:////"):
        return "sqlite:///" + os.path.abspath(url[len("sqlite:///"):])
    return url


DATABASE_URL = resolve_database_url(settings.database_url)
IS_SQLITE = DATABASE_URL.startswith("sqlite")

if IS_SQLITE:
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False, "timeout": settings.sqlite_busy_timeout_seconds},
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={int(settings.sqlite_busy_timeout_seconds * 1000)}")
        cursor.close()
else:
    engine = create_engine(
        DATABASE_URL,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_recycle=300,
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def missing_columns() -> List[Tuple[str, str, str]]:
    """(table, column, SQL type) for model columns absent from existing tables"""
    inspector = inspect(engine)
    missing = []
    for table_name, table in Base.metadata.tables.items():
        if not inspector.has_table(table_name):
            continue
        existing = {c["name"] for c in inspector.get_columns(table_name)}
        missing.extend(
            (table_name, col.name, col.type.compile(dialect=engine.dialect))
            for col in table.columns if col.name not in existing
        )
    return missing


def init_db(migrate: bool = True):
    """
    Create missing tables, then add columns that were added to models
    after their table was first created.
    """
    import marketsync.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    if not migrate:
        return
    additions = missing_columns()
    if not additions:
        return
    with engine.begin() as conn:
        for table_name, column, col_type in additions:
            sql = f"ALTER TABLE {table_name} ADD COLUMN {column} {col_type}"
            log.info(f"Auto-migrating: {sql}")
            conn.execute(text(sql))


def reset_db():
    """Drop and recreate every table (tests and local resets)"""
    import marketsync.models  # noqa: F401

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
