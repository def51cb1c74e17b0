import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Generator, Iterable, Optional

from sqlalchemy import create_engine, text, func, case
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from notifier.config import settings
from notifier.exceptions import BatchNotFound, InvalidTransition, MessageNotFound

logger = logging.getLogger(__name__)


def _connect_args(database_url: str) -> dict:
    # SQLite connections are shared between the request thread pool and the
    # event loop running dispatch tasks
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args(settings.DATABASE_URL),
    echo=False,
)

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
        from notifier.models import Batch, Message  # noqa: F401

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
    Check if the database is reachable and the messages table can be queried.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            db.execute(text("SELECT COUNT(*) FROM messages"))
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Batch Repository Functions
# =============================================================================

def create_batch(db: Session, source_name: str, records: Iterable) -> int:
    """
    Persist a batch and one PENDING message per record in a single transaction.

    Args:
        db: Database session
        source_name: Original file name (informational)
        records: Accepted NotificationRecord objects

    Returns:
        The new batch id

    Raises:
        Any database error, after rolling back. No rows of a failed batch
        are ever committed.
    """
    from notifier.models import Batch, Message, DeliveryStatus

    records = list(records)
    logger.info(f"Creating batch: source={source_name}, records={len(records)}")

    try:
        batch = Batch(source_name=source_name, total_records=len(records))
        db.add(batch)
        db.flush()

        db.add_all([
            Message(
                batch_id=batch.id,
                name=record.name,
                phone=record.phone,
                kind=record.kind,
                scheduled_date=record.scheduled_date,
                scheduled_time=record.scheduled_time,
                location=record.location,
                provider_name=record.provider_name,
                note=record.note,
                status=DeliveryStatus.PENDING.value,
            )
            for record in records
        ])
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to create batch from {source_name}: {e}")
        raise

    logger.info(f"Batch created: id={batch.id}, total_records={len(records)}")
    return batch.id


def get_batch(db: Session, batch_id: int):
    """
    Retrieve a batch by id.

    Raises:
        BatchNotFound: if no such batch exists
    """
    from notifier.models import Batch

    batch = db.query(Batch).filter(Batch.id == batch_id).first()
    if batch is None:
        raise BatchNotFound(batch_id)
    return batch


def list_pending_messages(db: Session, batch_id: int) -> list:
    """Return PENDING messages of a batch in creation order."""
    from notifier.models import Message, DeliveryStatus

    messages = (
        db.query(Message)
        .filter(Message.batch_id == batch_id, Message.status == DeliveryStatus.PENDING.value)
        .order_by(Message.id.asc())
        .all()
    )
    logger.debug(f"Batch {batch_id}: {len(messages)} pending messages")
    return messages


def list_messages(db: Session, batch_id: int) -> list:
    """Return every message of a batch in creation order."""
    from notifier.models import Message

    return (
        db.query(Message)
        .filter(Message.batch_id == batch_id)
        .order_by(Message.id.asc())
        .all()
    )


# =============================================================================
# Message State Transitions
# =============================================================================

@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of one send attempt, written back by the dispatcher."""

    status: str
    provider_message_id: Optional[str] = None
    error_detail: Optional[str] = None

    @classmethod
    def sent(cls, provider_message_id: str) -> "DeliveryOutcome":
        from notifier.models import DeliveryStatus
        return cls(status=DeliveryStatus.SENT.value, provider_message_id=provider_message_id)

    @classmethod
    def failed(cls, error_detail: str) -> "DeliveryOutcome":
        from notifier.models import DeliveryStatus
        return cls(status=DeliveryStatus.FAILED.value, error_detail=error_detail)


def update_delivery_outcome(db: Session, message_id: int, outcome: DeliveryOutcome) -> None:
    """
    Move a PENDING message to SENT or FAILED.

    The update is conditional on the row still being PENDING, so a second
    outcome for the same message is rejected by the database instead of
    overwriting the first one.

    Raises:
        InvalidTransition: if the message is missing or not PENDING
        ValueError: if the outcome status is not terminal
    """
    from notifier.models import Message, DeliveryStatus

    if outcome.status == DeliveryStatus.SENT.value:
        if not outcome.provider_message_id:
            raise ValueError("SENT outcome requires a provider message id")
        values = {
            Message.status: DeliveryStatus.SENT.value,
            Message.provider_message_id: outcome.provider_message_id,
            Message.sent_at: datetime.now(timezone.utc),
        }
    elif outcome.status == DeliveryStatus.FAILED.value:
        values = {
            Message.status: DeliveryStatus.FAILED.value,
            Message.error_detail: outcome.error_detail or "unknown error",
        }
    else:
        raise ValueError(f"Not a terminal delivery status: {outcome.status}")

    updated = (
        db.query(Message)
        .filter(Message.id == message_id, Message.status == DeliveryStatus.PENDING.value)
        .update(values, synchronize_session=False)
    )

    if updated == 0:
        db.rollback()
        current = db.query(Message.status).filter(Message.id == message_id).scalar()
        logger.error(f"Rejected delivery outcome for message {message_id}: status is {current}")
        raise InvalidTransition(message_id, current)

    db.commit()
    logger.info(
        f"Message {message_id} -> {outcome.status}",
        extra={"message_id": message_id, "provider_message_id": outcome.provider_message_id},
    )


def update_confirmation(db: Session, provider_message_id: str, confirmation_status: str) -> int:
    """
    Record the recipient's reply on the sent message with this provider id.

    Repeated events overwrite the previous confirmation (last write wins).

    Returns:
        The local id of the updated message

    Raises:
        MessageNotFound: if no SENT message carries the provider id
    """
    from notifier.models import Message, DeliveryStatus

    message = (
        db.query(Message)
        .filter(
            Message.provider_message_id == provider_message_id,
            Message.status == DeliveryStatus.SENT.value,
        )
        .first()
    )
    if message is None:
        raise MessageNotFound(provider_message_id)

    message.confirmation_status = getattr(confirmation_status, "value", confirmation_status)
    message.confirmed_at = datetime.now(timezone.utc)
    db.commit()

    logger.info(
        f"Confirmation recorded: {provider_message_id} -> {message.confirmation_status}",
        extra={"message_id": message.id, "provider_message_id": provider_message_id},
    )
    return message.id


# =============================================================================
# Reporting Queries
# =============================================================================

def _count_columns():
    from notifier.models import Message, DeliveryStatus

    sent = Message.status == DeliveryStatus.SENT.value
    return (
        func.count(Message.id).label("total"),
        func.sum(case((Message.status == DeliveryStatus.PENDING.value, 1), else_=0)).label("pending"),
        func.sum(case((sent, 1), else_=0)).label("sent"),
        func.sum(case((Message.status == DeliveryStatus.FAILED.value, 1), else_=0)).label("failed"),
        func.sum(
            case((sent & Message.confirmation_status.is_(None), 1), else_=0)
        ).label("awaiting_reply"),
        func.sum(
            case((Message.confirmation_status.isnot(None), 1), else_=0)
        ).label("replies_received"),
    )


def _row_counts(row) -> dict:
    return {
        "total": row.total or 0,
        "pending": row.pending or 0,
        "sent": row.sent or 0,
        "failed": row.failed or 0,
        "awaiting_reply": row.awaiting_reply or 0,
        "replies_received": row.replies_received or 0,
    }


def batch_summary(db: Session, batch_id: int) -> dict:
    """
    Count the messages of a batch by delivery and confirmation state.

    Returns:
        Dictionary with total, pending, sent, failed, awaiting_reply
        (SENT without a reply) and replies_received

    Raises:
        BatchNotFound: if the batch does not exist
    """
    from notifier.models import Message

    get_batch(db, batch_id)
    row = db.query(*_count_columns()).filter(Message.batch_id == batch_id).one()
    return _row_counts(row)


def list_batches(db: Session) -> list[dict]:
    """
    List every batch, newest first, with its message counts.
    """
    from notifier.models import Batch, Message

    rows = (
        db.query(Batch, *_count_columns())
        .outerjoin(Message, Message.batch_id == Batch.id)
        .group_by(Batch.id)
        .order_by(Batch.created_at.desc(), Batch.id.desc())
        .all()
    )

    return [
        {
            "id": row.Batch.id,
            "source_name": row.Batch.source_name,
            "total_records": row.Batch.total_records,
            "created_at": row.Batch.created_at,
            **_row_counts(row),
        }
        for row in rows
    ]
