import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Generator, Optional, Tuple

from sqlalchemy import and_, create_engine, func, inspect, or_, select, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError

from guestcomms.config import settings
from guestcomms.utils import read_string, utcnow

logger = logging.getLogger(__name__)

# SQLite needs check_same_thread=False because the claim loop runs in a worker
# thread; the busy timeout lets concurrent claimers wait for the write lock
_connect_args = {"check_same_thread": False, "timeout": 30} if settings.is_sqlite else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
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
    logger.debug(f"Initializing database with URL: {engine.url!r}")
    try:
        # Import models to register them with Base.metadata
        from guestcomms.models import Conversation, MessageLogEntry  # noqa: F401

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
        True if DB is healthy and schema exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            logger.debug("Database connectivity OK")

        inspector = inspect(engine)
        for table in ("conversations", "message_log_entries"):
            if not inspector.has_table(table):
                logger.error(f"Database schema not applied: '{table}' table not found")
                return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


@dataclass
class ClaimedMessage:
    """A job that has been moved to processing, with everything delivery needs."""

    id: str
    tenant_id: str
    conversation_id: str
    booking_id: str
    external_thread_id: Optional[str]
    originator: str
    body: str
    scheduled_send_at: Optional[datetime]
    metadata: dict = field(default_factory=dict)

    @property
    def message_type(self) -> Optional[str]:
        return read_string(self.metadata, "messageType")

    @property
    def message_label(self) -> Optional[str]:
        return read_string(self.metadata, "messageLabel")

    @property
    def reservation_id(self) -> Optional[str]:
        return read_string(self.metadata, "hostawayReservationId") or self.booking_id

    @property
    def guest_name(self) -> Optional[str]:
        return read_string(self.metadata, "guestName")

    @property
    def scheduled_local_at(self) -> Optional[str]:
        return read_string(self.metadata, "scheduledLocalAt")

    @property
    def scheduled_timezone(self) -> Optional[str]:
        return read_string(self.metadata, "scheduledTimezone")


# =============================================================================
# Conversation Repository Functions
# =============================================================================

def get_or_create_conversation(
    db: Session,
    tenant_id: str,
    booking_id: str,
    external_thread_id: Optional[str] = None,
):
    """
    Return the conversation for (tenant, booking), creating it on first use.

    Safe to repeat: a concurrent insert losing the unique-constraint race falls
    back to the row the other writer created. A non-null thread id replaces
    the stored one.
    """
    from guestcomms.models import Conversation, ConversationStatus

    now = utcnow()
    conversation = (
        db.query(Conversation)
        .filter(Conversation.tenant_id == tenant_id, Conversation.booking_id == booking_id)
        .first()
    )

    if conversation is None:
        conversation = Conversation(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            booking_id=booking_id,
            external_thread_id=external_thread_id,
            status=ConversationStatus.AUTOMATED.value,
            created_at=now,
            updated_at=now,
        )
        db.add(conversation)
        try:
            db.commit()
            logger.info(f"Created conversation {conversation.id} for booking {booking_id} (tenant {tenant_id})")
            return conversation
        except IntegrityError:
            db.rollback()
            logger.info(f"Conversation for booking {booking_id} created concurrently, reusing it")
            conversation = (
                db.query(Conversation)
                .filter(Conversation.tenant_id == tenant_id, Conversation.booking_id == booking_id)
                .one()
            )

    if external_thread_id and conversation.external_thread_id != external_thread_id:
        conversation.external_thread_id = external_thread_id
    conversation.updated_at = now
    db.commit()
    return conversation


def get_conversation(db: Session, tenant_id: str, conversation_id: str):
    """Look up a conversation by id, scoped to its owning tenant."""
    from guestcomms.models import Conversation

    return (
        db.query(Conversation)
        .filter(Conversation.id == conversation_id, Conversation.tenant_id == tenant_id)
        .first()
    )


def find_conversation_by_booking(db: Session, tenant_id: str, booking_id: str):
    from guestcomms.models import Conversation

    return (
        db.query(Conversation)
        .filter(Conversation.tenant_id == tenant_id, Conversation.booking_id == booking_id)
        .first()
    )


def link_external_thread(
    db: Session,
    tenant_id: str,
    conversation_id: str,
    external_thread_id: Optional[str],
) -> bool:
    """Persist the provider thread id on a conversation if it changed."""
    from guestcomms.models import Conversation

    if not external_thread_id:
        return False

    updated = (
        db.query(Conversation)
        .filter(
            Conversation.id == conversation_id,
            Conversation.tenant_id == tenant_id,
            or_(
                Conversation.external_thread_id.is_(None),
                Conversation.external_thread_id != external_thread_id,
            ),
        )
        .update(
            {Conversation.external_thread_id: external_thread_id, Conversation.updated_at: utcnow()},
            synchronize_session=False,
        )
    )
    db.commit()
    if updated:
        logger.info(f"Linked conversation {conversation_id} to thread {external_thread_id}")
    return bool(updated)


def set_conversation_status(db: Session, tenant_id: str, conversation_id: str, status) -> bool:
    """
    Pause or resume automation for a conversation.

    Returns:
        False when the conversation does not exist for this tenant.
    """
    from guestcomms.models import Conversation, ConversationStatus

    status = ConversationStatus(status)
    updated = (
        db.query(Conversation)
        .filter(Conversation.id == conversation_id, Conversation.tenant_id == tenant_id)
        .update(
            {Conversation.status: status.value, Conversation.updated_at: utcnow()},
            synchronize_session=False,
        )
    )
    db.commit()
    logger.info(f"Conversation {conversation_id} status -> {status.value} (matched={updated})")
    return bool(updated)


# =============================================================================
# Message Log Repository Functions
# =============================================================================

def _find_by_dedup_key(db: Session, conversation_id: str, dedup_key: str):
    from guestcomms.models import MessageLogEntry

    return (
        db.query(MessageLogEntry)
        .filter(
            MessageLogEntry.conversation_id == conversation_id,
            MessageLogEntry.dedup_key == dedup_key,
        )
        .first()
    )


def _create_entry(
    db: Session,
    conversation,
    originator,
    status,
    body: str,
    dedup_key: Optional[str] = None,
    scheduled_send_at: Optional[datetime] = None,
    actual_sent_at: Optional[datetime] = None,
    metadata: Optional[dict] = None,
    created_at: Optional[datetime] = None,
) -> Tuple[str, bool]:
    """
    Insert a log entry unless one with the same dedup key already exists.

    Returns:
        Tuple of (entry id, created)
        - (new id, True): entry inserted
        - (existing id, False): duplicate, nothing written
    """
    from guestcomms.models import Conversation, MessageLogEntry

    if dedup_key:
        existing = _find_by_dedup_key(db, conversation.id, dedup_key)
        if existing is not None:
            logger.debug(
                f"Duplicate entry {dedup_key} in conversation {conversation.id} "
                f"(existing {existing.id}, status {existing.status})"
            )
            return existing.id, False

    now = utcnow()
    entry_id = str(uuid.uuid4())
    entry = MessageLogEntry(
        id=entry_id,
        conversation_id=conversation.id,
        tenant_id=conversation.tenant_id,
        booking_id=conversation.booking_id,
        originator=originator.value,
        status=status.value,
        body=body,
        scheduled_send_at=scheduled_send_at,
        actual_sent_at=actual_sent_at,
        meta=dict(metadata or {}),
        dedup_key=dedup_key,
        created_at=created_at or now,
        updated_at=now,
    )

    try:
        db.add(entry)
        db.query(Conversation).filter(Conversation.id == conversation.id).update(
            {Conversation.updated_at: now}, synchronize_session=False
        )
        db.commit()
    except IntegrityError:
        # Lost an insert race on the dedup key - this is expected for idempotency
        db.rollback()
        existing = _find_by_dedup_key(db, conversation.id, dedup_key) if dedup_key else None
        if existing is None:
            raise
        logger.info(f"Duplicate entry {dedup_key} detected on insert (conversation {conversation.id})")
        return existing.id, False

    return entry_id, True


def create_pending_outbound_message(
    db: Session,
    conversation,
    message_type: str,
    message_label: str,
    reservation_id: str,
    guest_name: str,
    scheduled_send_at: datetime,
    scheduled_local: datetime,
    timezone_name: str,
    metadata: Optional[dict] = None,
) -> Tuple[str, bool]:
    """
    Enqueue a proactive message as a pending job.

    Dedup is on (conversation, message type, reservation) across every status,
    so a message that was already sent or failed is never queued again. The
    stored body is a placeholder: the template is resolved at send time so
    template edits apply to already-scheduled messages.
    """
    from guestcomms.models import MessageStatus, Originator

    payload = {
        "messageType": message_type,
        "messageLabel": message_label,
        "hostawayReservationId": reservation_id,
        "hostawayConversationId": conversation.external_thread_id,
        "guestName": guest_name,
        "scheduledLocalAt": scheduled_local.isoformat(),
        "scheduledTimezone": timezone_name,
    }
    payload.update(metadata or {})

    return _create_entry(
        db,
        conversation,
        Originator.AI,
        MessageStatus.PENDING,
        body=f"Automated message scheduled ({message_label}) for {guest_name}",
        dedup_key=f"scheduled:{message_type}:{reservation_id}",
        scheduled_send_at=scheduled_send_at,
        metadata=payload,
    )


def log_guest_message(db: Session, conversation, body: str, metadata: Optional[dict] = None) -> Tuple[str, bool]:
    """
    Record an inbound guest message as already delivered.

    Deduplicated by the provider message id, or by ``messageHash`` when the
    provider sent no id (webhook retries).
    """
    from guestcomms.models import MessageStatus, Originator

    metadata = metadata or {}
    provider_message_id = read_string(metadata, "hostawayMessageId", "messageId")
    message_hash = read_string(metadata, "messageHash")
    if provider_message_id:
        dedup_key = f"guest:{provider_message_id}"
    elif message_hash:
        dedup_key = f"guest-hash:{message_hash}"
    else:
        dedup_key = None

    now = utcnow()
    return _create_entry(
        db,
        conversation,
        Originator.GUEST,
        MessageStatus.SENT,
        body=body,
        dedup_key=dedup_key,
        actual_sent_at=now,
        metadata=metadata,
    )


def log_human_reply(db: Session, conversation, body: str, metadata: Optional[dict] = None) -> str:
    """Record a reply an operator already sent."""
    from guestcomms.models import MessageStatus, Originator

    entry_id, _ = _create_entry(
        db,
        conversation,
        Originator.HUMAN,
        MessageStatus.SENT,
        body=body,
        actual_sent_at=utcnow(),
        metadata=metadata,
    )
    return entry_id


def log_history_message(
    db: Session,
    conversation,
    body: str,
    incoming: bool,
    sent_at: datetime,
    metadata: dict,
) -> Tuple[str, bool]:
    """Import one message from the provider's thread history."""
    from guestcomms.models import MessageStatus, Originator

    provider_message_id = read_string(metadata, "hostawayMessageId")
    prefix = "guest" if incoming else "history"
    return _create_entry(
        db,
        conversation,
        Originator.GUEST if incoming else Originator.HUMAN,
        MessageStatus.SENT,
        body=body,
        dedup_key=f"{prefix}:{provider_message_id}" if provider_message_id else None,
        actual_sent_at=sent_at,
        metadata=metadata,
        created_at=sent_at,
    )


def create_pending_ai_reply(
    db: Session,
    conversation,
    body: str,
    metadata: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> Tuple[str, bool]:
    """
    Queue an AI reply for immediate delivery.

    At most one reply per guest message (``guestMessageLogId``). The entry
    carries ``messageType = ai_reply`` so the claim loop can deliver it if the
    process dies before the synchronous send.
    """
    return _create_immediate_reply(db, conversation, body, "ai_reply", "AI Reply", "ai-reply", metadata, now)


def create_pending_keyword_reply(
    db: Session,
    conversation,
    body: str,
    metadata: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> Tuple[str, bool]:
    """Queue the tenant's keyword auto-reply; at most one per guest message."""
    return _create_immediate_reply(
        db, conversation, body, "message_received_keyword", "Keyword Auto-Reply", "keyword-reply", metadata, now
    )


def _create_immediate_reply(db, conversation, body, message_type, label, dedup_prefix, metadata, now):
    from guestcomms.models import MessageStatus, Originator

    metadata = {"messageType": message_type, "messageLabel": label, **(metadata or {})}
    guest_message_log_id = read_string(metadata, "guestMessageLogId", "inReplyTo")

    return _create_entry(
        db,
        conversation,
        Originator.AI,
        MessageStatus.PENDING,
        body=body,
        dedup_key=f"{dedup_prefix}:{guest_message_log_id}" if guest_message_log_id else None,
        scheduled_send_at=now or utcnow(),
        metadata=metadata,
    )


def find_ai_reply(db: Session, conversation_id: str, guest_message_log_id: str):
    """The AI reply already queued for a guest message, if any."""
    return _find_by_dedup_key(db, conversation_id, f"ai-reply:{guest_message_log_id}")


def list_conversation_messages(db: Session, tenant_id: str, conversation_id: str) -> list:
    """Message history of a conversation in send order."""
    from guestcomms.models import MessageLogEntry

    return (
        db.query(MessageLogEntry)
        .filter(
            MessageLogEntry.conversation_id == conversation_id,
            MessageLogEntry.tenant_id == tenant_id,
        )
        .order_by(_send_order(), MessageLogEntry.id.asc())
        .all()
    )


def get_message(db: Session, message_id: str):
    from guestcomms.models import MessageLogEntry

    return db.query(MessageLogEntry).filter(MessageLogEntry.id == message_id).first()


# =============================================================================
# Claim / Settle
# =============================================================================

def _send_order():
    from guestcomms.models import MessageLogEntry

    return func.coalesce(
        MessageLogEntry.scheduled_send_at,
        MessageLogEntry.actual_sent_at,
        MessageLogEntry.created_at,
    ).asc()


def _claimable(now: datetime, lease_seconds: int):
    """Predicate for rows a claimer may take: due pending rows, plus processing rows whose lease expired."""
    from guestcomms.models import MessageLogEntry, MessageStatus

    due = and_(
        MessageLogEntry.status == MessageStatus.PENDING.value,
        or_(
            MessageLogEntry.scheduled_send_at.is_(None),
            MessageLogEntry.scheduled_send_at <= now,
        ),
    )
    if lease_seconds <= 0:
        return due

    cutoff = now - timedelta(seconds=lease_seconds)
    expired = and_(
        MessageLogEntry.status == MessageStatus.PROCESSING.value,
        or_(MessageLogEntry.claimed_at.is_(None), MessageLogEntry.claimed_at <= cutoff),
    )
    return or_(due, expired)


def select_due_message_ids(db: Session, limit: int, now: datetime, lease_seconds: int = 0) -> list:
    """
    Candidate ids for a claim, earliest due first.

    On PostgreSQL the rows are locked with SKIP LOCKED so concurrent claimers
    walk past each other; other dialects rely on the compare-and-set in
    ``try_claim_message``.
    """
    from guestcomms.models import MessageLogEntry

    rows = (
        db.query(MessageLogEntry.id)
        .filter(_claimable(now, lease_seconds))
        .order_by(_send_order(), MessageLogEntry.created_at.asc(), MessageLogEntry.id.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
        .all()
    )
    return [row.id for row in rows]


def try_claim_message(db: Session, message_id: str, now: datetime, lease_seconds: int = 0) -> bool:
    """
    Move one row to processing if it is still claimable. Does not commit.

    The update re-checks the claimable predicate, so two claimers that both
    selected the same candidate cannot both win it.
    """
    from guestcomms.models import MessageLogEntry, MessageStatus

    updated = (
        db.query(MessageLogEntry)
        .filter(MessageLogEntry.id == message_id, _claimable(now, lease_seconds))
        .update(
            {
                MessageLogEntry.status: MessageStatus.PROCESSING.value,
                MessageLogEntry.claimed_at: now,
                MessageLogEntry.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    return updated == 1


def load_claimed_messages(db: Session, message_ids: list) -> list:
    """Full delivery context for claimed rows, preserving the given order."""
    from guestcomms.models import Conversation, MessageLogEntry

    if not message_ids:
        return []

    rows = (
        db.query(MessageLogEntry, Conversation.external_thread_id)
        .outerjoin(Conversation, Conversation.id == MessageLogEntry.conversation_id)
        .filter(MessageLogEntry.id.in_(message_ids))
        .all()
    )
    by_id = {}
    for entry, thread_id in rows:
        metadata = dict(entry.meta or {})
        by_id[entry.id] = ClaimedMessage(
            id=entry.id,
            tenant_id=entry.tenant_id,
            conversation_id=entry.conversation_id,
            booking_id=entry.booking_id,
            external_thread_id=thread_id or read_string(metadata, "hostawayConversationId"),
            originator=entry.originator,
            body=entry.body,
            scheduled_send_at=entry.scheduled_send_at,
            metadata=metadata,
        )
    return [by_id[message_id] for message_id in message_ids if message_id in by_id]


def claim_due_messages(
    db: Session,
    limit: int,
    now: Optional[datetime] = None,
    lease_seconds: int = 0,
) -> list:
    """
    Atomically claim up to ``limit`` due jobs.

    Selection and the pending -> processing transition happen in one
    transaction; only rows this call actually transitioned are returned, so
    overlapping claimers always receive disjoint sets.

    Returns:
        List of ClaimedMessage in ascending due order.
    """
    if limit <= 0:
        return []

    now = now or utcnow()
    try:
        candidates = select_due_message_ids(db, limit, now, lease_seconds)
        claimed_ids = [
            message_id
            for message_id in candidates
            if try_claim_message(db, message_id, now, lease_seconds)
        ]
        db.commit()
    except Exception:
        db.rollback()
        raise

    if len(claimed_ids) < len(candidates):
        logger.debug(f"Claimed {len(claimed_ids)} of {len(candidates)} candidates; the rest went to another claimer")
    if claimed_ids:
        logger.info(f"Claimed {len(claimed_ids)} due messages")

    return load_claimed_messages(db, claimed_ids)


def claim_message(db: Session, message_id: str, now: Optional[datetime] = None) -> Optional[ClaimedMessage]:
    """Claim one specific pending row regardless of its scheduled time."""
    from guestcomms.models import MessageLogEntry, MessageStatus

    now = now or utcnow()
    updated = (
        db.query(MessageLogEntry)
        .filter(
            MessageLogEntry.id == message_id,
            MessageLogEntry.status == MessageStatus.PENDING.value,
        )
        .update(
            {
                MessageLogEntry.status: MessageStatus.PROCESSING.value,
                MessageLogEntry.claimed_at: now,
                MessageLogEntry.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    if not updated:
        logger.debug(f"Message {message_id} not found or already claimed")
        return None
    claimed = load_claimed_messages(db, [message_id])
    return claimed[0] if claimed else None


def mark_message_sent(
    db: Session,
    message_id: str,
    body: str,
    metadata: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Settle a processing job as sent, recording the delivered body.

    Returns:
        False if the job left processing in the meantime (e.g. cancelled).
    """
    from guestcomms.models import MessageLogEntry, MessageStatus

    now = now or utcnow()
    entry = get_message(db, message_id)
    if entry is None:
        logger.warning(f"Cannot mark unknown message {message_id} as sent")
        return False

    merged: dict[str, Any] = {**(entry.meta or {}), **(metadata or {})}
    updated = (
        db.query(MessageLogEntry)
        .filter(
            MessageLogEntry.id == message_id,
            MessageLogEntry.status == MessageStatus.PROCESSING.value,
        )
        .update(
            {
                MessageLogEntry.status: MessageStatus.SENT.value,
                MessageLogEntry.body: body,
                MessageLogEntry.actual_sent_at: now,
                MessageLogEntry.meta: merged,
                MessageLogEntry.error_message: None,
                MessageLogEntry.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    if not updated:
        logger.warning(f"Message {message_id} was delivered but is no longer processing (status {entry.status})")
    return bool(updated)


def mark_message_failed(db: Session, message_id: str, error) -> bool:
    """
    Settle a pending or processing job as failed with the error text.

    Returns:
        False if the job was already terminal.
    """
    from guestcomms.models import MessageLogEntry, MessageStatus, OPEN_STATUSES

    error_message = str(error)
    updated = (
        db.query(MessageLogEntry)
        .filter(
            MessageLogEntry.id == message_id,
            MessageLogEntry.status.in_(OPEN_STATUSES),
        )
        .update(
            {
                MessageLogEntry.status: MessageStatus.FAILED.value,
                MessageLogEntry.error_message: error_message,
                MessageLogEntry.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.commit()
    logger.info(f"Message {message_id} failed: {error_message}")
    return bool(updated)


def _owned_conversation(tenant_id: str, conversation_id: str):
    from guestcomms.models import Conversation

    return select(Conversation.id).where(
        Conversation.id == conversation_id,
        Conversation.tenant_id == tenant_id,
    )


def cancel_pending_message(db: Session, tenant_id: str, conversation_id: str, message_id: str) -> bool:
    """
    Cancel one open job of a tenant's conversation.

    Returns:
        False when the job is unknown or already processed; callers treat this
        as a normal outcome of racing the claim loop.
    """
    from guestcomms.models import MessageLogEntry, MessageStatus, OPEN_STATUSES, OPERATOR_CANCELLED_REASON

    updated = (
        db.query(MessageLogEntry)
        .filter(
            MessageLogEntry.id == message_id,
            MessageLogEntry.conversation_id == conversation_id,
            MessageLogEntry.status.in_(OPEN_STATUSES),
            MessageLogEntry.conversation_id.in_(_owned_conversation(tenant_id, conversation_id)),
        )
        .update(
            {
                MessageLogEntry.status: MessageStatus.FAILED.value,
                MessageLogEntry.error_message: OPERATOR_CANCELLED_REASON,
                MessageLogEntry.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.commit()
    logger.info(f"Cancel message {message_id} in conversation {conversation_id}: {'done' if updated else 'not found or already processed'}")
    return bool(updated)


def cancel_all_pending_messages(
    db: Session,
    tenant_id: str,
    conversation_id: str,
    reason: Optional[str] = None,
) -> int:
    """Cancel every open job of one conversation; returns how many were cancelled."""
    from guestcomms.models import MessageLogEntry, MessageStatus, OPEN_STATUSES, OPERATOR_CANCELLED_REASON

    updated = (
        db.query(MessageLogEntry)
        .filter(
            MessageLogEntry.conversation_id == conversation_id,
            MessageLogEntry.status.in_(OPEN_STATUSES),
            MessageLogEntry.conversation_id.in_(_owned_conversation(tenant_id, conversation_id)),
        )
        .update(
            {
                MessageLogEntry.status: MessageStatus.FAILED.value,
                MessageLogEntry.error_message: reason or OPERATOR_CANCELLED_REASON,
                MessageLogEntry.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.commit()
    logger.info(f"Cancelled {updated} open messages in conversation {conversation_id}")
    return updated


def get_stats(db: Session, tenant_id: Optional[str] = None) -> dict:
    """
    Get job statistics for the /stats endpoints.

    Computes:
    - total_messages: count of all log entries
    - messages_by_status: count per status (every status present, zero if none)
    - conversations_count / paused_conversations
    - next_scheduled_send_at: earliest pending send time (null if none)

    With ``tenant_id`` every figure is limited to that tenant's rows.
    """
    from guestcomms.models import Conversation, ConversationStatus, MessageLogEntry, MessageStatus

    logger.info(f"Computing message statistics (tenant {tenant_id or 'all'})")

    def messages(*columns):
        query = db.query(*columns)
        return query.filter(MessageLogEntry.tenant_id == tenant_id) if tenant_id else query

    def conversations():
        query = db.query(func.count(Conversation.id))
        return query.filter(Conversation.tenant_id == tenant_id) if tenant_id else query

    total_messages = messages(func.count(MessageLogEntry.id)).scalar() or 0

    by_status = {status.value: 0 for status in MessageStatus}
    for status, count in (
        messages(MessageLogEntry.status, func.count(MessageLogEntry.id))
        .group_by(MessageLogEntry.status)
        .all()
    ):
        by_status[status] = count

    conversations_count = conversations().scalar() or 0
    paused_conversations = (
        conversations()
        .filter(Conversation.status == ConversationStatus.PAUSED_BY_HUMAN.value)
        .scalar()
        or 0
    )

    next_scheduled = (
        messages(MessageLogEntry.scheduled_send_at)
        .filter(MessageLogEntry.status == MessageStatus.PENDING.value)
        .order_by(MessageLogEntry.scheduled_send_at.asc())
        .first()
    )

    logger.debug(f"Stats computed: {total_messages} messages, {conversations_count} conversations")

    return {
        "total_messages": total_messages,
        "messages_by_status": by_status,
        "conversations_count": conversations_count,
        "paused_conversations": paused_conversations,
        "next_scheduled_send_at": next_scheduled[0] if next_scheduled else None,
    }
