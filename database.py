"""
Database configuration and session management
PostgreSQL in production, SQLite for local development and tests
"""

import os

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from shared.utils import config, setup_logging

logger = setup_logging("database")

DEFAULT_SQLITE_URL = "sqlite:///./slidecast.db"


def build_database_url() -> str:
    """
    Build database URL from environment variables with fallback to DATABASE_URL
    Supports individual DB components for flexible configuration
    """
    # Priority 1: Use DATABASE_URL if provided
    database_url = config.get("database_url") or os.getenv("DATABASE_URL")
    if database_url:
        # Convert postgres:// to postgresql:// for SQLAlchemy compatibility
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)
        return database_url

    # Priority 2: Build from individual components
    db_host = os.getenv("DB_HOST")
    if not db_host:
        logger.info("No database configured, using local SQLite database")
        return DEFAULT_SQLITE_URL

    db_port = os.getenv("DB_PORT", "5432")
    db_user = os.getenv("DB_USER", "postgres")
    db_password = os.getenv("DB_PASSWORD", "postgres")
    db_name = os.getenv("DB_NAME", "slidecast")
    db_sslmode = os.getenv("DB_SSLMODE", "prefer")

    database_url = f"postgresql://{db_user}:{db_password}@{db_host}:{db_port}/{db_name}"
    if db_sslmode:
        database_url += f"?sslmode={db_sslmode}"

    logger.info(f"Built database URL from components: postgresql://{db_user}:***@{db_host}:{db_port}/{db_name}")
    return database_url


def create_database_engine(database_url: str | None = None):
    """Create SQLAlchemy engine with appropriate configuration"""
    database_url = database_url or build_database_url()

    if database_url.startswith("sqlite"):
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # In-memory databases must share a single connection across threads
            return create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(database_url, connect_args={"check_same_thread": False})

    return create_engine(
        database_url,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=3600,  # Recycle connections every hour
        pool_size=10,
        max_overflow=20,
        echo=False,
    )


def create_session_factory(bind) -> sessionmaker:
    """Session factory whose objects stay readable after commit"""
    return sessionmaker(bind=bind, autocommit=False, autoflush=False, expire_on_commit=False)


# Create engine and session
engine = create_database_engine()
SessionLocal = create_session_factory(engine)
Base = declarative_base()


def init_database(bind=None):
    """Initialize database tables"""
    # Register ORM models on the metadata
    import models.database  # noqa: F401

    target = bind or engine
    try:
        with target.connect() as conn:
            conn.execute(text("SELECT 1"))
        Base.metadata.create_all(bind=target)
        logger.info("Database tables initialized successfully")
    except SQLAlchemyError as e:
        logger.error(f"Failed to initialize database tables: {e}")
        raise
