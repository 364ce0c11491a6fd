import logging
from datetime import datetime, timezone
from typing import Any, Generator, List, Optional

from sqlalchemy import create_engine, or_, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, joinedload, sessionmaker

from sms_relay.config import settings

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's async
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

VOICE_MODE_KEY = "voice_mode"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from sms_relay import models  # noqa: F401

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
    Check if the database is reachable.

    Returns:
        True if DB is healthy, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Conversations
# =============================================================================

def get_or_create_conversation(db: Session, phone_number: str, client_name: Optional[str] = None):
    """
    Find the conversation for a phone number, creating it on first contact.

    An existing conversation gets its name backfilled (first write wins).
    Message counts are updated by store_incoming_message.
    """
    from sms_relay.models import Conversation

    conversation = db.query(Conversation).filter(Conversation.phone_number == phone_number).first()
    if conversation is not None:
        if client_name and not conversation.client_name:
            conversation.client_name = client_name
            db.commit()
            db.refresh(conversation)
        return conversation

    conversation = Conversation(
        phone_number=phone_number,
        client_name=client_name,
        message_count=0,
        status="active",
    )
    db.add(conversation)
    db.commit()
    db.refresh(conversation)
    logger.info(f"Created new conversation: id={conversation.id}, phone={phone_number}")
    return conversation


# =============================================================================
# Messages
# =============================================================================

def message_exists(db: Session, provider_sid: str) -> bool:
    """Return True if a message with this provider identifier is already stored."""
    from sms_relay.models import Message

    return db.query(Message.id).filter(Message.provider_sid == provider_sid).first() is not None


def store_incoming_message(
    db: Session,
    conversation_id: int,
    provider_sid: Optional[str],
    body: str,
    media_urls: Optional[list] = None,
):
    """
    Store an inbound message with status "received" and count it on its
    conversation. Both writes commit together, so a rejected duplicate
    leaves the conversation untouched.

    Raises:
        IntegrityError: if provider_sid was stored concurrently by a retry
    """
    from sms_relay.models import Conversation, Message

    message = Message(
        conversation_id=conversation_id,
        direction="inbound",
        body=body,
        provider_sid=provider_sid,
        media_urls=media_urls or None,
        status="received",
    )
    db.query(Conversation).filter(Conversation.id == conversation_id).update(
        {
            Conversation.message_count: Conversation.message_count + 1,
            Conversation.last_message_at: _now(),
        },
        synchronize_session=False,
    )
    db.add(message)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    db.refresh(message)
    return message


def store_draft_reply(
    db: Session,
    conversation_id: int,
    draft_body: str,
    calendar_context: Optional[str] = None,
    action_summary: Optional[str] = None,
):
    """Store an outbound draft awaiting approval."""
    from sms_relay.models import Message

    message = Message(
        conversation_id=conversation_id,
        direction="outbound",
        body="",
        draft_body=draft_body,
        status="pending_approval",
        calendar_context=calendar_context,
        action_summary=action_summary,
    )
    db.add(message)
    db.commit()
    db.refresh(message)
    return message


def get_message(db: Session, message_id: int):
    """Retrieve a message together with its conversation."""
    from sms_relay.models import Message

    return (
        db.query(Message)
        .options(joinedload(Message.conversation))
        .filter(Message.id == message_id)
        .first()
    )


def get_conversation_history(db: Session, conversation_id: int, limit: int = 10) -> list:
    """
    Recent received/sent messages of a conversation, oldest first.
    Drafts, rejected and failed messages are not part of the history.
    """
    from sms_relay.models import Message

    rows = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .filter(Message.status.in_(("received", "sent")))
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(rows))


def get_last_inbound_body(db: Session, conversation_id: int) -> Optional[str]:
    """Body of the latest inbound message of a conversation."""
    from sms_relay.models import Message

    row = (
        db.query(Message.body)
        .filter(Message.conversation_id == conversation_id, Message.direction == "inbound")
        .order_by(Message.created_at.desc(), Message.id.desc())
        .first()
    )
    return row[0] if row else None


def approve_message(db: Session, message_id: int, final_body: Optional[str] = None) -> bool:
    """
    Move a draft from pending_approval to approved.

    The update is conditioned on the current status, so of two concurrent
    decisions only one wins.

    Returns:
        True if this call performed the transition, False if the message
        was not pending (already processed or missing).
    """
    from sms_relay.models import Message

    message = db.query(Message).filter(Message.id == message_id).first()
    if message is None:
        return False
    body = final_body or message.draft_body or ""

    updated = (
        db.query(Message)
        .filter(Message.id == message_id, Message.status == "pending_approval")
        .update(
            {Message.body: body, Message.status: "approved", Message.approved_at: _now()},
            synchronize_session=False,
        )
    )
    db.commit()
    if updated:
        logger.info(f"Message approved: id={message_id}")
    return bool(updated)


def reject_message(db: Session, message_id: int) -> bool:
    """
    Move a draft from pending_approval to rejected.

    Returns:
        True if this call performed the transition, False otherwise.
    """
    from sms_relay.models import Message

    updated = (
        db.query(Message)
        .filter(Message.id == message_id, Message.status == "pending_approval")
        .update({Message.status: "rejected"}, synchronize_session=False)
    )
    db.commit()
    if updated:
        logger.info(f"Message rejected: id={message_id}")
    return bool(updated)


def mark_message_sent(db: Session, message_id: int, provider_sid: Optional[str]) -> bool:
    """approved -> sent, recording the provider's delivery identifier."""
    from sms_relay.models import Message

    updated = (
        db.query(Message)
        .filter(Message.id == message_id, Message.status == "approved")
        .update(
            {Message.status: "sent", Message.provider_sid: provider_sid, Message.sent_at: _now()},
            synchronize_session=False,
        )
    )
    db.commit()
    if not updated:
        logger.error(f"Failed to mark message sent: id={message_id}")
    return bool(updated)


def mark_message_failed(db: Session, message_id: int, error: str) -> bool:
    """approved -> failed, keeping the error for a manual resend."""
    from sms_relay.models import Message

    updated = (
        db.query(Message)
        .filter(Message.id == message_id, Message.status == "approved")
        .update({Message.status: "failed", Message.error: error}, synchronize_session=False)
    )
    db.commit()
    if not updated:
        logger.error(f"Failed to mark message failed: id={message_id}")
    return bool(updated)


def search_messages(
    db: Session,
    query: Optional[str] = None,
    phone: Optional[str] = None,
    direction: Optional[str] = None,
    limit: int = 20,
    since: Optional[datetime] = None,
) -> list:
    """
    Read-only message search, newest first.

    Args:
        query: case-insensitive substring of body or draft
        phone: exact conversation phone number
        direction: inbound or outbound
        limit: maximum rows
        since: only messages created at or after this time
    """
    from sms_relay.models import Conversation, Message

    builder = db.query(Message).join(Conversation).options(joinedload(Message.conversation))

    if since is not None:
        builder = builder.filter(Message.created_at >= since)
    if direction:
        builder = builder.filter(Message.direction == direction)
    if phone:
        builder = builder.filter(Conversation.phone_number == phone)
    if query:
        pattern = f"%{query}%"
        builder = builder.filter(or_(Message.body.ilike(pattern), Message.draft_body.ilike(pattern)))

    return builder.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit).all()


# =============================================================================
# Correction records
# =============================================================================

def create_correction(
    db: Session,
    action: str,
    original_draft: Optional[str],
    corrected_text: Optional[str] = None,
    incoming_context: Optional[str] = None,
    incoming_from: Optional[str] = None,
    source_message_id: Optional[int] = None,
    channel: str = "sms",
    metadata: Optional[dict] = None,
):
    """Append a correction record for an edit or a rejection."""
    from sms_relay.models import CorrectionRecord

    record = CorrectionRecord(
        channel=channel,
        action=action,
        incoming_context=incoming_context,
        incoming_from=incoming_from,
        original_draft=original_draft,
        corrected_text=corrected_text if action == "edit" else None,
        source_message_id=source_message_id,
        extra=metadata or {},
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info(f"Correction stored: id={record.id}, action={action}")
    return record


def set_correction_rule(db: Session, correction_id: int, rule: str, category: str) -> None:
    from sms_relay.models import CorrectionRecord

    db.query(CorrectionRecord).filter(CorrectionRecord.id == correction_id).update(
        {CorrectionRecord.correction_rule: rule, CorrectionRecord.rule_category: category},
        synchronize_session=False,
    )
    db.commit()


def mark_correction_promoted(db: Session, correction_id: int) -> None:
    from sms_relay.models import CorrectionRecord

    db.query(CorrectionRecord).filter(CorrectionRecord.id == correction_id).update(
        {CorrectionRecord.promoted: True},
        synchronize_session=False,
    )
    db.commit()


def list_unpromoted_corrections(db: Session, limit: int = 10) -> list:
    """Records with an extracted rule that never reached semantic memory, oldest first."""
    from sms_relay.models import CorrectionRecord

    return (
        db.query(CorrectionRecord)
        .filter(CorrectionRecord.correction_rule.isnot(None))
        .filter(CorrectionRecord.promoted.is_(False))
        .order_by(CorrectionRecord.created_at.asc(), CorrectionRecord.id.asc())
        .limit(limit)
        .all()
    )


def find_correction_rules(db: Session, words: List[str], limit: int = 5) -> List[str]:
    """Stored rules mentioning any of the given words."""
    from sms_relay.models import CorrectionRecord

    if not words:
        return []
    rows = (
        db.query(CorrectionRecord.correction_rule)
        .filter(CorrectionRecord.correction_rule.isnot(None))
        .filter(or_(*[CorrectionRecord.correction_rule.ilike(f"%{word}%") for word in words]))
        .order_by(CorrectionRecord.created_at.desc())
        .limit(limit)
        .all()
    )
    return [row[0] for row in rows if row[0]]


def recent_correction_rules(db: Session, limit: int = 3) -> List[str]:
    from sms_relay.models import CorrectionRecord

    rows = (
        db.query(CorrectionRecord.correction_rule)
        .filter(CorrectionRecord.correction_rule.isnot(None))
        .order_by(CorrectionRecord.created_at.desc(), CorrectionRecord.id.desc())
        .limit(limit)
        .all()
    )
    return [row[0] for row in rows if row[0]]


# =============================================================================
# Settings slot
# =============================================================================

def get_setting(db: Session, key: str, default: Optional[str] = None) -> Optional[str]:
    from sms_relay.models import Setting

    row = db.query(Setting).filter(Setting.key == key).first()
    if row is None or not row.value:
        return default
    return row.value


def set_setting(db: Session, key: str, value: Any) -> None:
    from sms_relay.models import Setting

    row = db.query(Setting).filter(Setting.key == key).first()
    if row is None:
        db.add(Setting(key=key, value=str(value)))
    else:
        row.value = str(value)
    db.commit()


# =============================================================================
# Reminders
# =============================================================================

def create_reminder(db: Session, message: str, scheduled_for: datetime):
    from sms_relay.models import Reminder

    reminder = Reminder(message=message, scheduled_for=scheduled_for, status="pending", retry_count=0)
    db.add(reminder)
    db.commit()
    db.refresh(reminder)
    logger.info(f"Reminder created: id={reminder.id}, scheduled_for={scheduled_for.isoformat()}")
    return reminder


def list_pending_reminders(db: Session) -> list:
    from sms_relay.models import Reminder

    return (
        db.query(Reminder)
        .filter(Reminder.status == "pending")
        .order_by(Reminder.scheduled_for.asc())
        .all()
    )


def list_due_reminders(db: Session, now: Optional[datetime] = None) -> list:
    from sms_relay.models import Reminder

    return (
        db.query(Reminder)
        .filter(Reminder.status == "pending", Reminder.scheduled_for <= (now or _now()))
        .order_by(Reminder.scheduled_for.asc())
        .all()
    )


def get_reminder(db: Session, reminder_id: str):
    from sms_relay.models import Reminder

    return db.query(Reminder).filter(Reminder.id == reminder_id).first()


def claim_reminder(db: Session, reminder_id: str) -> bool:
    """
    Optimistic claim: pending -> calling, conditioned on the current status.

    Returns:
        True for exactly one of any number of concurrent claimers.
    """
    from sms_relay.models import Reminder

    updated = (
        db.query(Reminder)
        .filter(Reminder.id == reminder_id, Reminder.status == "pending")
        .update({Reminder.status: "calling"}, synchronize_session=False)
    )
    db.commit()
    return bool(updated)


def update_reminder(db: Session, reminder_id: str, **fields: Any) -> None:
    from sms_relay.models import Reminder

    db.query(Reminder).filter(Reminder.id == reminder_id).update(
        {getattr(Reminder, name): value for name, value in fields.items()},
        synchronize_session=False,
    )
    db.commit()


def cancel_reminder(db: Session, reminder_id: str):
    """Cancel a pending reminder. Returns the reminder, or None if it was not pending."""
    from sms_relay.models import Reminder

    updated = (
        db.query(Reminder)
        .filter(Reminder.id == reminder_id, Reminder.status == "pending")
        .update({Reminder.status: "cancelled"}, synchronize_session=False)
    )
    db.commit()
    if not updated:
        return None
    logger.info(f"Reminder cancelled: id={reminder_id}")
    return get_reminder(db, reminder_id)
