import logging
from datetime import datetime
from typing import Any, Generator, Optional

from sqlalchemy import create_engine, event, func, inspect, or_, text, update
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from inbox_gateway.config import settings

logger = logging.getLogger(__name__)

_is_sqlite = settings.DATABASE_URL.startswith("sqlite")

# check_same_thread=False is required for SQLite to work with FastAPI's async
engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False} if _is_sqlite else {},
    echo=False,
)

if _is_sqlite:
    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        # SQLite ignores ON DELETE clauses unless this is set per connection
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from inbox_gateway import models  # noqa: F401

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
        True if DB is healthy and the core tables exist, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        table_names = set(inspect(engine).get_table_names())
        missing = {"conversations", "messages", "webhook_events", "app_settings"} - table_names
        if missing:
            logger.error(f"Database schema not applied, missing tables: {sorted(missing)}")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Settings Store
# =============================================================================

def get_app_setting(db: Session, key: str) -> Optional[Any]:
    """Return the JSON value stored under key, or None."""
    from inbox_gateway.models import AppSetting

    row = db.get(AppSetting, key)
    return row.value if row else None


def set_app_setting(db: Session, key: str, value: Any) -> None:
    """Insert or replace the JSON value stored under key."""
    from inbox_gateway.models import AppSetting, utcnow

    row = db.get(AppSetting, key)
    if row is None:
        db.add(AppSetting(key=key, value=value, updated_at=utcnow()))
    else:
        row.value = value
        row.updated_at = utcnow()
    db.commit()
    logger.info(f"App setting saved: {key}")


# =============================================================================
# Conversation Repository Functions
# =============================================================================

def get_conversation_by_phone(db: Session, phone: str):
    from inbox_gateway.models import Conversation

    return db.query(Conversation).filter(Conversation.phone == phone).first()


def get_conversation_by_id(db: Session, conversation_id: str):
    from inbox_gateway.models import Conversation

    return db.get(Conversation, conversation_id)


def create_conversation(db: Session, phone: str, display_name: Optional[str] = None):
    """
    Insert a conversation and commit.

    Raises:
        IntegrityError: another conversation already owns this phone.
        The caller is expected to roll back and re-select.
    """
    from inbox_gateway.models import Conversation

    conversation = Conversation(phone=phone, display_name=display_name)
    db.add(conversation)
    db.commit()
    db.refresh(conversation)
    logger.info(f"Conversation created: id={conversation.id}, phone={phone}")
    return conversation


def touch_conversation(db: Session, conversation_id: str, at: datetime) -> None:
    """
    Advance last_activity_at to `at`.

    Safe to repeat: the row is only updated when `at` is newer, so the
    timestamp never moves backwards.
    """
    from inbox_gateway.models import Conversation

    db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .where(or_(Conversation.last_activity_at.is_(None), Conversation.last_activity_at < at))
        .values(last_activity_at=at, updated_at=at)
        # SQLite returns naive datetimes; skip in-Python evaluation against the session
        .execution_options(synchronize_session=False)
    )
    db.commit()


def delete_conversation(db: Session, conversation_id: str) -> bool:
    """Delete a conversation and, by cascade, its messages."""
    conversation = get_conversation_by_id(db, conversation_id)
    if conversation is None:
        return False
    db.delete(conversation)
    db.commit()
    logger.info(f"Conversation deleted: {conversation_id}")
    return True


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_message(db: Session, **fields):
    """Insert a message row and commit. Returns the refreshed ORM object."""
    from inbox_gateway.models import Message

    message = Message(**fields)
    db.add(message)
    db.commit()
    db.refresh(message)
    logger.info(
        f"Message created: id={message.id}, conversation={message.conversation_id}, "
        f"direction={message.direction}, status={message.status}"
    )
    return message


def get_message_by_id(db: Session, message_id: str):
    from inbox_gateway.models import Message

    return db.get(Message, message_id)


def delete_message(db: Session, message_id: str) -> Optional[dict]:
    """
    Delete a single message.

    Replies that pointed at it lose their link instead of dangling.

    Returns:
        {"id", "conversationId"} of the deleted row, or None when missing.
    """
    from inbox_gateway.models import Message

    message = db.get(Message, message_id)
    if message is None:
        return None

    deleted = {"id": message.id, "conversationId": message.conversation_id}
    db.execute(
        update(Message)
        .where(Message.reply_to_message_id == message_id)
        .values(reply_to_message_id=None)
    )
    db.delete(message)
    db.commit()
    logger.info(f"Message deleted: {message_id}")
    return deleted


# =============================================================================
# Statistics
# =============================================================================

def get_stats(db: Session) -> dict:
    """
    Compute inbox statistics for the /api/statistics endpoint.

    Returns:
        Dictionary with totals, top conversations and recent activity
    """
    from inbox_gateway.models import Conversation, Message

    total_conversations = db.query(func.count(Conversation.id)).scalar() or 0
    total_messages = db.query(func.count(Message.id)).scalar() or 0
    incoming = (
        db.query(func.count(Message.id)).filter(Message.direction == "inbound").scalar() or 0
    )
    outgoing = (
        db.query(func.count(Message.id)).filter(Message.direction == "outbound").scalar() or 0
    )

    message_count = func.count(Message.id).label("message_count")
    top_rows = (
        db.query(Conversation.phone, Conversation.display_name, message_count)
        .outerjoin(Message, Message.conversation_id == Conversation.id)
        .group_by(Conversation.id, Conversation.phone, Conversation.display_name)
        .order_by(message_count.desc(), Conversation.phone.asc())
        .limit(5)
        .all()
    )
    top_conversations = [
        {"phone": row.phone, "displayName": row.display_name, "messageCount": row.message_count}
        for row in top_rows
    ]

    recent_rows = (
        db.query(Message, Conversation.phone, Conversation.display_name)
        .join(Conversation, Message.conversation_id == Conversation.id)
        .order_by(Message.created_at.desc())
        .limit(10)
        .all()
    )
    recent_activity = [
        {
            "id": message.id,
            "direction": message.direction,
            "body": message.body,
            "createdAt": message.created_at.isoformat() if message.created_at else None,
            "phone": phone,
            "displayName": display_name,
        }
        for message, phone, display_name in recent_rows
    ]

    logger.info(f"Stats computed: {total_messages} messages, {total_conversations} conversations")

    return {
        "totals": {
            "conversations": total_conversations,
            "messages": total_messages,
            "incoming": incoming,
            "outgoing": outgoing,
        },
        "topConversations": top_conversations,
        "recentActivity": recent_activity,
    }
