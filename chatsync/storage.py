import logging
from typing import Generator, Optional, Tuple

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from chatsync.config import settings

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to be shared between the
# request thread pool and background sync tasks
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("sessions", "contacts", "messages", "message_media", "sync_state", "sync_locks")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from chatsync import models  # noqa: F401

        logger.debug("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and every table exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            logger.debug("Database connectivity OK")

            existing = set(inspect(db.get_bind()).get_table_names())
            missing = [name for name in REQUIRED_TABLES if name not in existing]
            if missing:
                logger.error(f"Database schema not applied, missing tables: {missing}")
                return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Read Queries
# =============================================================================

def get_channel_session(db: Session, session_id: str):
    """Look up a channel session by its id."""
    from chatsync.models import ChannelSession

    return db.get(ChannelSession, session_id)


def get_channel_session_by_name(db: Session, session_name: str):
    """Look up a channel session by the gateway's instance name."""
    from chatsync.models import ChannelSession

    return db.query(ChannelSession).filter(ChannelSession.session_name == session_name).first()


def get_messages(
    db: Session,
    session_id: str,
    limit: int = 50,
    offset: int = 0,
    contact_id: Optional[int] = None,
    since: Optional[int] = None,
    q: Optional[str] = None
) -> Tuple[list, int]:
    """
    Retrieve canonical messages of a session with pagination and filtering.

    Args:
        db: Database session
        session_id: Owning channel session
        limit: Maximum number of messages to return (1-100)
        offset: Number of messages to skip
        contact_id: Filter by chat contact
        since: Filter messages with timestamp >= since (unix seconds)
        q: Free-text search in message body (case-insensitive)

    Returns:
        Tuple of (messages list, total count matching filters)
    """
    from chatsync.models import Message

    logger.info(f"Querying messages: session={session_id}, limit={limit}, offset={offset}")
    logger.debug(f"Filters: contact_id={contact_id}, since={since}, q={q}")

    query = db.query(Message).filter(Message.session_id == session_id)

    if contact_id is not None:
        query = query.filter(Message.contact_id == contact_id)

    if since is not None:
        query = query.filter(Message.timestamp >= since)

    if q:
        query = query.filter(Message.body.ilike(f"%{q}%"))

    total = query.count()

    # Deterministic ordering: timestamp ASC, id ASC
    query = query.order_by(Message.timestamp.asc(), Message.id.asc())

    messages = query.offset(offset).limit(limit).all()
    logger.info(f"Retrieved {len(messages)} of {total} total messages")

    return messages, total


def get_contacts(db: Session, session_id: str) -> list:
    """Return every contact of a session, named contacts first."""
    from chatsync.models import Contact

    return (
        db.query(Contact)
        .filter(Contact.session_id == session_id)
        .order_by(Contact.name.is_(None), Contact.name.asc(), Contact.address.asc())
        .all()
    )
