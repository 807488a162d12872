import logging
from typing import Callable, Generator, Iterable, List, Optional, Tuple, TypeVar

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import LargeBinary, cast, create_engine, delete, func, inspect, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import aliased, sessionmaker, Session, declarative_base

from app.config import settings
from app.errors import MessageValidationError, StorageError
from app.metrics import record_rows_skipped
from app.schemas import Message

logger = logging.getLogger(__name__)

# Table names are fixed here and never taken from request input
MESSAGES_TABLE = "messages"
DELETED_MESSAGES_TABLE = "deleted_messages"

# Never return more than 256 rows at once, whatever the caller asks for
MAX_PAGE_SIZE = 256

T = TypeVar("T")

# check_same_thread=False is required for SQLite to work with FastAPI's async
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

# The engine's pool hands out one connection per in-flight request
engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

_server_id_adapter = TypeAdapter(int)


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from app.models import MessageRow, DeletedMessageRow  # noqa: F401

        logger.debug("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use; closing rolls back
    anything that was not committed.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and both tables exist.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            logger.debug("Database connectivity OK")

            inspector = inspect(conn)
            for table in (MESSAGES_TABLE, DELETED_MESSAGES_TABLE):
                if not inspector.has_table(table):
                    logger.error(f"Database schema not applied: '{table}' table not found")
                    return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Helpers
# =============================================================================

def clamp_limit(limit: Optional[int]) -> int:
    """Apply the default page size and the hard cap of MAX_PAGE_SIZE."""
    if limit is None:
        return MAX_PAGE_SIZE
    return max(0, min(limit, MAX_PAGE_SIZE))


def decode_rows(rows: Iterable, decode: Callable[..., T], table: str) -> Tuple[List[T], int]:
    """
    Decode a row stream, dropping rows that fail to decode.

    A row whose decode raises a pydantic ValidationError is logged and
    excluded; the remaining rows are still returned.

    Returns:
        Tuple of (decoded items, number of skipped rows)
    """
    items: List[T] = []
    skipped = 0
    for row in rows:
        try:
            items.append(decode(row))
        except ValidationError as e:
            skipped += 1
            logger.warning(
                f"Excluding row from {table} response due to decode error: {e.errors()}"
            )
    if skipped:
        record_rows_skipped(table, skipped)
    return items, skipped


def _decode_message(row) -> Message:
    # text arrives as raw bytes; pydantic rejects invalid UTF-8
    return Message(server_id=row.id, text=row.text)


def _decode_server_id(row) -> int:
    return _server_id_adapter.validate_python(row.id)


# =============================================================================
# Message Repository Functions
# =============================================================================

def insert_message(db: Session, message: Message) -> Message:
    """
    Store a message and return it with its server_id populated.

    Validation happens before the session is used, so an invalid message
    never acquires a connection.

    Args:
        db: Database session
        message: Client-submitted message (server_id is ignored)

    Returns:
        The stored message, server_id set to the assigned row id

    Raises:
        MessageValidationError: text failed the validity predicate
        StorageError: insert or commit failed
    """
    from app.models import MessageRow

    if not message.is_valid():
        logger.info(f"Rejected invalid message (length={len(message.text)})")
        raise MessageValidationError(
            f"text must be non-blank and at most {settings.MESSAGE_MAX_LENGTH} characters"
        )

    logger.debug(f"Inserting message: length={len(message.text)}")

    try:
        row = MessageRow(text=message.text)
        db.add(row)
        db.flush()
        server_id = row.id
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to insert message: {e}")
        raise StorageError("insert message", e) from e

    logger.info(f"Message created: server_id={server_id}")
    return Message(server_id=server_id, text=message.text)


def get_messages(
    db: Session,
    from_server_id: Optional[int] = None,
    limit: Optional[int] = None
) -> List[Message]:
    """
    Retrieve one page of messages.

    With from_server_id, returns messages with a greater id in ascending
    order (forward sync). Without it, returns the newest messages in
    descending order. Either way at most MAX_PAGE_SIZE rows come back.

    Args:
        db: Database session
        from_server_id: Cursor; only ids strictly greater are returned
        limit: Page size, defaults to and is capped at MAX_PAGE_SIZE

    Returns:
        List of decoded messages (rows that fail to decode are skipped)

    Raises:
        StorageError: the query could not be executed
    """
    from app.models import MessageRow

    limit = clamp_limit(limit)
    logger.info(f"Querying messages: from_server_id={from_server_id}, limit={limit}")

    query = select(MessageRow.id, cast(MessageRow.text, LargeBinary).label("text"))
    if from_server_id is not None:
        query = query.where(MessageRow.id > from_server_id).order_by(MessageRow.id.asc())
    else:
        query = query.order_by(MessageRow.id.desc())
    query = query.limit(limit)

    try:
        result = db.execute(query)
        messages, skipped = decode_rows(result, _decode_message, MESSAGES_TABLE)
    except SQLAlchemyError as e:
        logger.error(f"Couldn't query messages: {e}")
        raise StorageError("list messages", e) from e

    logger.info(f"Retrieved {len(messages)} messages ({skipped} skipped)")
    return messages


def delete_message(db: Session, server_id: int) -> int:
    """
    Delete a message and log its id in the deletion log.

    Both statements run in one transaction. The log entry is only written
    when a row was actually removed, so deleting a missing id is a no-op.

    Args:
        db: Database session
        server_id: Identifier of the message to delete

    Returns:
        Number of message rows deleted (0 or 1)

    Raises:
        StorageError: delete, log insert or commit failed
    """
    from app.models import MessageRow, DeletedMessageRow

    logger.debug(f"Deleting message: server_id={server_id}")

    try:
        result = db.execute(delete(MessageRow).where(MessageRow.id == server_id))
        count = result.rowcount
        if count > 0:
            db.add(DeletedMessageRow(id=server_id))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to delete message {server_id}: {e}")
        raise StorageError("delete message", e) from e

    logger.info(f"Delete processed: server_id={server_id}, rows={count}")
    return count


def get_deleted_message_ids(
    db: Session,
    from_server_id: Optional[int] = None,
    limit: Optional[int] = None
) -> List[int]:
    """
    Retrieve one page of the deletion log.

    Pages by the order deletions were logged, not by message id. Without
    a cursor the most recent deletions come first. With from_server_id,
    returns the deletions logged after that id was deleted, oldest first;
    a cursor that is not in the log is read as a log position, so 0
    starts from the beginning. Same cap and row-skip rules as get_messages.

    Raises:
        StorageError: the query could not be executed
    """
    from app.models import DeletedMessageRow

    limit = clamp_limit(limit)
    logger.info(f"Querying deleted messages: from_server_id={from_server_id}, limit={limit}")

    query = select(DeletedMessageRow.id)
    if from_server_id is not None:
        cursor_row = aliased(DeletedMessageRow)
        cursor_seq = (
            select(cursor_row.seq)
            .where(cursor_row.id == from_server_id)
            .scalar_subquery()
        )
        query = query.where(
            DeletedMessageRow.seq > func.coalesce(cursor_seq, from_server_id)
        ).order_by(DeletedMessageRow.seq.asc())
    else:
        query = query.order_by(DeletedMessageRow.seq.desc())
    query = query.limit(limit)

    try:
        result = db.execute(query)
        ids, skipped = decode_rows(result, _decode_server_id, DELETED_MESSAGES_TABLE)
    except SQLAlchemyError as e:
        logger.error(f"Couldn't query deleted messages: {e}")
        raise StorageError("list deleted messages", e) from e

    logger.info(f"Retrieved {len(ids)} deleted ids ({skipped} skipped)")
    return ids
