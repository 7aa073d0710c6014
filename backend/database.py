"""
SQLite database setup for the catalog mirror, rules and scheduler state.
Uses SQLAlchemy with a single StaticPool connection shared by the service.
"""
import logging
from datetime import timedelta

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from clock import utcnow
from config import CONFIG_DIR

logger = logging.getLogger(__name__)

# Database file location
CATALOG_DB_FILE = CONFIG_DIR / "catalog.db"

# Keep this many days of finished sync runs
SYNC_RUN_RETENTION_DAYS = 90

# SQLAlchemy Base for model declarations
Base = declarative_base()

# Engine and session factory (initialized on startup)
_engine = None
_SessionLocal = None


def get_database_url() -> str:
    """Get the SQLite database URL."""
    return f"sqlite:///{CATALOG_DB_FILE}"


def _on_connect(dbapi_connection, connection_record) -> None:
    # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs nest correctly
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _on_begin(conn) -> None:
    # Sessions share the single StaticPool connection; join an open transaction
    if not conn.connection.dbapi_connection.in_transaction:
        conn.exec_driver_sql("BEGIN")


def create_catalog_engine(database_url: str):
    """Create an engine with SQLite-specific settings."""
    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,  # Set to True for SQL debugging
    )
    event.listen(engine, "connect", _on_connect)
    event.listen(engine, "begin", _on_begin)
    return engine


def init_db() -> None:
    """Initialize the database, creating tables if they don't exist."""
    global _engine, _SessionLocal

    try:
        CONFIG_DIR.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Config directory ensured: {CONFIG_DIR}")

        logger.info(f"Initializing catalog database at {CATALOG_DB_FILE}")
        _engine = create_catalog_engine(get_database_url())

        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)

        # Import models to register them with Base
        import models  # noqa: F401

        Base.metadata.create_all(bind=_engine)
        logger.debug("Database tables created/verified")

        # Run migrations for existing tables (add new columns if missing)
        _run_migrations(_engine)

        # Perform maintenance: purge old sync runs
        _perform_maintenance(_engine)

        logger.info("Catalog database initialized successfully")
    except Exception as e:
        logger.exception(f"Failed to initialize database: {e}")
        raise


# (table, column, DDL) triples for columns added after the first release
_ADDITIVE_COLUMNS = [
    ("catalog_items", "content_hash", "VARCHAR(64)"),
    ("sync_runs", "items_removed", "INTEGER DEFAULT 0 NOT NULL"),
    ("sync_runs", "error_message", "TEXT"),
    ("library_rules", "generated_by", "VARCHAR(50)"),
]


def _run_migrations(engine) -> None:
    """Run database migrations to add new columns to existing tables."""
    logger.debug("Checking for database migrations")
    with engine.connect() as conn:
        for table, column, ddl in _ADDITIVE_COLUMNS:
            result = conn.execute(text(f"PRAGMA table_info({table})"))
            columns = [row[1] for row in result.fetchall()]
            if not columns:
                logger.debug(f"{table} table doesn't exist yet, skipping migration")
                continue
            if column not in columns:
                logger.info(f"Adding {column} column to {table}")
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
                conn.commit()
                logger.info(f"Migration complete: added {column} column to {table}")


def _perform_maintenance(engine) -> None:
    """Purge finished sync runs past the retention window."""
    cutoff = utcnow() - timedelta(days=SYNC_RUN_RETENTION_DAYS)
    with engine.connect() as conn:
        try:
            result = conn.execute(
                text("DELETE FROM sync_runs WHERE status != 'in_progress' AND started_at < :cutoff"),
                {"cutoff": cutoff},
            )
            if result.rowcount > 0:
                logger.info(f"Purged {result.rowcount} sync runs older than {SYNC_RUN_RETENTION_DAYS} days")
            conn.commit()
        except Exception as e:
            logger.error(f"Database maintenance failed: {e}")


def get_session():
    """Get a database session. Use as context manager or close manually."""
    if _SessionLocal is None:
        logger.error("Attempted to get database session before initialization")
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _SessionLocal()


def get_engine():
    """Get the database engine."""
    if _engine is None:
        logger.error("Attempted to get database engine before initialization")
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _engine
