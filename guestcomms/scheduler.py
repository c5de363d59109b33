"""
Enqueue service: reacts to PMS events and persists the resulting jobs.

Reservation events are planned into proactive messages and stored as pending
jobs; inbound guest messages are logged and answered by the keyword
auto-reply and the reply generator (when configured). Replies are delivered
through the same claim/execute/settle path the claim loop uses.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from guestcomms import storage
from guestcomms.delivery import resolve_thread_id
from guestcomms.logging_utils import job_context
from guestcomms.metrics import record_scheduled_message
from guestcomms.models import ConversationStatus, MessageStatus, PAUSED_REASON, RESERVATION_CANCELLED_REASON
from guestcomms.planner import build_guest_name, plan_messages
from guestcomms.providers import PmsClient, ReplyGenerator, Tenant, TenantProvider
from guestcomms.utils import read_record, read_string, utcnow

logger = logging.getLogger(__name__)

RESERVATION_ID_PATHS = ("id", "reservationId", "reservation_id")

RESERVATION_CREATED_EVENTS = frozenset({"reservation.created", "reservation_created", "reservationcreate"})
RESERVATION_UPDATED_EVENTS = frozenset({"reservation.updated", "reservation_updated"})
MESSAGE_RECEIVED_EVENTS = frozenset({"message.received", "message_received", "guestmessage"})


def _is_cancelled(reservation: dict) -> bool:
    return (read_string(reservation, "status") or "").lower() == "cancelled"


def _parse_sent_at(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = value.strip().replace(" ", "T", 1)
    if text.endswith(("Z", "z")):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        # PMS history timestamps without an offset are UTC
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class MessageScheduler:
    def __init__(
        self,
        session_factory,
        tenants: TenantProvider,
        pms: PmsClient,
        executor,
        reply_generator: Optional[ReplyGenerator] = None,
        followup_hours: float = 6.0,
    ):
        self.session_factory = session_factory
        self.tenants = tenants
        self.pms = pms
        self.executor = executor
        self.reply_generator = reply_generator
        self.followup_hours = followup_hours

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def handle_event(self, tenant_id: str, payload: dict) -> None:
        """Dispatch a PMS webhook event. Errors are logged, never raised."""
        try:
            self._handle_event(tenant_id, payload)
        except Exception as e:
            logger.error(f"Failed to process PMS event for tenant {tenant_id}: {e}", exc_info=True)

    def _handle_event(self, tenant_id: str, payload: dict) -> None:
        tenant = self.tenants.get_tenant_by_id(tenant_id)
        event_type = (read_string(payload, "event", "type") or "").lower()

        if event_type in RESERVATION_CREATED_EVENTS:
            reservation = read_record(payload, "reservation") or payload
            self.schedule_reservation(tenant, reservation, initial_sync=False)
        elif event_type in RESERVATION_UPDATED_EVENTS:
            reservation = read_record(payload, "reservation") or payload
            reservation_id = read_string(reservation, *RESERVATION_ID_PATHS)
            if _is_cancelled(reservation) and reservation_id:
                self.cancel_reservation_messages(tenant, reservation_id)
            else:
                # Date changes; jobs already queued keep their dedup keys
                self.schedule_reservation(tenant, reservation, initial_sync=False)
        elif event_type in MESSAGE_RECEIVED_EVENTS:
            self.handle_incoming_message(tenant, payload)
        else:
            logger.debug(f"Unhandled PMS event type '{event_type}' for tenant {tenant.id}")

    # -------------------------------------------------------------------------
    # Reservations
    # -------------------------------------------------------------------------

    def schedule_reservation(
        self,
        tenant: Tenant,
        reservation: dict,
        initial_sync: bool = False,
        now: Optional[datetime] = None,
    ) -> list:
        """
        Plan and enqueue the proactive messages of one reservation.

        Idempotent: re-running for the same reservation returns the ids of the
        jobs already queued instead of inserting new ones.

        Returns:
            Ids of created or pre-existing jobs, in plan order.
        """
        reservation_id = read_string(reservation, *RESERVATION_ID_PATHS)

        if _is_cancelled(reservation):
            logger.debug(f"Skipping scheduling for cancelled reservation {reservation_id} (tenant {tenant.id})")
            if reservation_id:
                self.cancel_reservation_messages(tenant, reservation_id)
            return []

        if not reservation_id:
            logger.warning(f"Unable to schedule reservation for tenant {tenant.id}: missing reservation id")
            return []

        thread_id = self._lookup_thread(tenant, reservation_id)

        with self.session_factory() as db:
            conversation = storage.get_or_create_conversation(db, tenant.id, reservation_id, thread_id)

            plans = plan_messages(
                reservation,
                initial_sync=initial_sync,
                now=now,
                followup_hours=self.followup_hours,
            )
            if not plans:
                logger.debug(
                    f"No proactive messages generated for reservation {reservation_id} (tenant {tenant.id}), "
                    f"conversation {conversation.id} exists"
                )
                return []

            message_ids = []
            skipped = 0
            for plan in plans:
                message_id, created = storage.create_pending_outbound_message(
                    db,
                    conversation,
                    message_type=plan.message_type,
                    message_label=plan.label,
                    reservation_id=reservation_id,
                    guest_name=plan.guest_name,
                    scheduled_send_at=plan.scheduled_send_at,
                    scheduled_local=plan.scheduled_local,
                    timezone_name=plan.timezone,
                    metadata={"initialSync": initial_sync, "tenantId": tenant.id},
                )
                record_scheduled_message(plan.message_type, created)
                if not created:
                    skipped += 1
                    logger.debug(f"{plan.label} already queued for reservation {reservation_id} as {message_id}")
                message_ids.append(message_id)

        if initial_sync and skipped:
            logger.warning(
                f"Reservation {reservation_id}: {len(plans) - skipped} messages created, {skipped} duplicates skipped"
            )
        logger.info(
            f"Queued {len(plans)} proactive messages for reservation {reservation_id} "
            f"(tenant {tenant.id}) via {'initial sync' if initial_sync else 'event'} path"
        )
        return message_ids

    def cancel_reservation_messages(self, tenant: Tenant, reservation_id: str) -> int:
        """Fail every open job of a cancelled reservation. Never raises."""
        try:
            with self.session_factory() as db:
                conversation = storage.find_conversation_by_booking(db, tenant.id, reservation_id)
                if conversation is None:
                    logger.debug(
                        f"No conversation for cancelled reservation {reservation_id} (tenant {tenant.id}), nothing to cancel"
                    )
                    return 0
                cancelled = storage.cancel_all_pending_messages(
                    db, tenant.id, conversation.id, RESERVATION_CANCELLED_REASON
                )
        except Exception as e:
            logger.error(f"Failed to cancel pending messages for reservation {reservation_id} (tenant {tenant.id}): {e}")
            return 0

        logger.info(f"Cancelled {cancelled} pending messages for cancelled reservation {reservation_id} (tenant {tenant.id})")
        return cancelled

    def _lookup_thread(self, tenant: Tenant, reservation_id: str) -> Optional[str]:
        try:
            threads = self.pms.get_reservation_conversations(tenant, reservation_id)
        except Exception as e:
            logger.warning(f"Unable to resolve PMS thread for reservation {reservation_id} (tenant {tenant.id}): {e}")
            return None
        return resolve_thread_id(threads, reservation_id)

    # -------------------------------------------------------------------------
    # Inbound messages
    # -------------------------------------------------------------------------

    def handle_incoming_message(self, tenant: Tenant, payload: dict) -> Optional[str]:
        """
        Log a guest message and answer it.

        A message mentioning a reply keyword first gets the tenant's keyword
        auto-reply, then the reply generator runs. A redelivered message is
        answered at most once per reply kind.

        Returns:
            Id of the AI reply entry, or None when no reply was queued.
        """
        message = read_record(payload, "message") or payload
        body = read_string(message, "body", "message_text", "content")
        if not body:
            logger.warning(f"Received PMS message event without body for tenant {tenant.id}")
            return None

        reservation_id = (
            read_string(payload, "reservationId", "reservation_id")
            or read_string(message, "reservationId", "reservation_id")
            or read_string(payload, "reservation.id", "thread.reservationId")
        )
        if not reservation_id:
            logger.warning(f"Skipping guest message for tenant {tenant.id}: missing reservation id")
            return None

        reservation = self.pms.get_reservation(tenant, reservation_id) or {}
        thread_id = read_string(payload, "conversationId", "conversation_id") or self._lookup_thread(tenant, reservation_id)

        provider_message_id = read_string(message, "id", "messageId", "message_id")
        message_hash = None
        if not provider_message_id:
            timestamp = read_string(message, "createdAt", "created_at", "timestamp") or utcnow().isoformat()
            message_hash = f"{body[:100]}_{timestamp}"[:100]

        with self.session_factory() as db:
            conversation = storage.get_or_create_conversation(db, tenant.id, reservation_id, thread_id)
            conversation_id = conversation.id
            guest_message_id, created = storage.log_guest_message(
                db,
                conversation,
                body,
                {
                    "tenantId": tenant.id,
                    "hostawayReservationId": reservation_id,
                    "hostawayConversationId": conversation.external_thread_id,
                    "hostawayMessageId": provider_message_id,
                    "messageHash": message_hash,
                },
            )

        if not created:
            logger.info(f"Guest message {guest_message_id} already logged (redelivery)")

        self.sync_conversation_history(tenant, conversation_id, reservation_id)

        guest_name = read_string(payload, "guestName", "guest_name", "guest.name") or build_guest_name(reservation)
        self._send_keyword_reply(tenant, conversation_id, guest_message_id, body, payload, reservation, guest_name)

        if self.reply_generator is None:
            return None

        with self.session_factory() as db:
            existing = storage.find_ai_reply(db, conversation_id, guest_message_id)
            if existing is not None:
                logger.info(f"Guest message {guest_message_id} already answered by {existing.id}")
                return existing.id

        reply = self.reply_generator.generate_reply(
            tenant,
            conversation_id,
            body,
            {
                "reservation": reservation,
                "reservationId": reservation_id,
                "guestName": guest_name,
                "guestMessageLogId": guest_message_id,
            },
        )
        if not reply:
            return None

        with self.session_factory() as db:
            conversation = storage.get_conversation(db, tenant.id, conversation_id)
            reply_id, reply_created = storage.create_pending_ai_reply(
                db,
                conversation,
                reply,
                {
                    "guestMessageLogId": guest_message_id,
                    "hostawayReservationId": reservation_id,
                    "hostawayConversationId": conversation.external_thread_id,
                    "guestName": guest_name,
                    "tenantId": tenant.id,
                },
            )

        if reply_created:
            self._deliver_now(tenant, conversation_id, reply_id, "AI reply")
        return reply_id

    def _send_keyword_reply(self, tenant, conversation_id, guest_message_id, body, payload, reservation, guest_name):
        """Queue and send the keyword auto-reply for a guest message. Never raises."""
        try:
            reply = self.executor.compose_keyword_reply(tenant, body, payload, reservation, guest_name)
            if not reply:
                return None

            with self.session_factory() as db:
                conversation = storage.get_conversation(db, tenant.id, conversation_id)
                entry_id, created = storage.create_pending_keyword_reply(
                    db,
                    conversation,
                    reply,
                    {
                        "guestMessageLogId": guest_message_id,
                        "hostawayReservationId": conversation.booking_id,
                        "hostawayConversationId": conversation.external_thread_id,
                        "guestName": guest_name,
                        "tenantId": tenant.id,
                    },
                )
            if created:
                self._deliver_now(tenant, conversation_id, entry_id, "Keyword auto-reply")
        except Exception as e:
            logger.error(f"Keyword auto-reply failed for guest message {guest_message_id} (tenant {tenant.id}): {e}")
            return None
        return entry_id

    def _deliver_now(self, tenant: Tenant, conversation_id: str, entry_id: str, label: str) -> None:
        """Claim and execute a freshly queued reply; paused conversations fail it instead."""
        with self.session_factory() as db:
            conversation = storage.get_conversation(db, tenant.id, conversation_id)
            if conversation.status == ConversationStatus.PAUSED_BY_HUMAN.value:
                logger.debug(f"Conversation {conversation_id} is paused; skipping {label}")
                storage.mark_message_failed(db, entry_id, PAUSED_REASON)
                return

            claimed = storage.claim_message(db, entry_id)

        if claimed is None:
            # Already picked up by the claim loop
            return

        with job_context(entry_id, tenant.id):
            status = self.executor.execute(claimed)
        if status != MessageStatus.SENT.value:
            logger.warning(f"{label} {entry_id} for conversation {conversation_id} was not sent")

    def sync_conversation_history(self, tenant: Tenant, conversation_id: str, reservation_id: str) -> int:
        """
        Import the PMS thread history of a reservation as sent log entries.

        Best effort: every error is logged and swallowed.

        Returns:
            Number of messages imported.
        """
        try:
            threads = self.pms.get_reservation_conversations(tenant, reservation_id) or []
        except Exception as e:
            logger.warning(f"Failed to sync conversation history for reservation {reservation_id}: {e}")
            return 0

        synced = 0
        for thread in threads:
            thread_id = read_string(thread, "id", "conversationId", "conversation_id")
            if not thread_id:
                continue

            try:
                messages = self.pms.get_conversation_messages(tenant, thread_id) or []
            except Exception as e:
                logger.warning(f"Failed to fetch messages for thread {thread_id}, using embedded messages: {e}")
                messages = thread.get("conversationMessages") or thread.get("messages") or []

            for message in messages:
                if not isinstance(message, dict):
                    continue
                provider_message_id = read_string(message, "id", "messageId", "message_id")
                body = read_string(message, "body", "message", "content", "text")
                if not provider_message_id or not body:
                    continue

                sent_at = _parse_sent_at(
                    read_string(message, "date", "sentToChannelDate", "sentToChannelAttemptDate", "insertedOn", "inserted_on")
                ) or utcnow()
                incoming = bool(message.get("isIncoming") or message.get("is_incoming"))

                try:
                    with self.session_factory() as db:
                        conversation = storage.get_conversation(db, tenant.id, conversation_id)
                        if conversation is None:
                            logger.warning(f"Conversation {conversation_id} not found for history sync")
                            return synced
                        _, created = storage.log_history_message(
                            db,
                            conversation,
                            body,
                            incoming=incoming,
                            sent_at=sent_at,
                            metadata={
                                "hostawayMessageId": provider_message_id,
                                "hostawayConversationId": thread_id,
                                "reservationId": reservation_id,
                                "communicationType": read_string(message, "communicationType", "communication_type", "type") or "channel",
                                "syncedFromHistory": True,
                            },
                        )
                except Exception as e:
                    logger.warning(f"Failed to sync message {provider_message_id} for conversation {conversation_id}: {e}")
                    continue
                if created:
                    synced += 1

        if synced:
            logger.debug(f"Synced {synced} messages from PMS history for reservation {reservation_id}")
        return synced
