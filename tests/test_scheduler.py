"""
Tests for the enqueue service (MessageScheduler).

Tests cover:
- Scheduling a reservation (idempotent, metadata, thread lookup)
- Reservation cancellation cleanup
- Event dispatch
- Inbound guest messages with automated replies
- Conversation history import
"""

from datetime import datetime, timezone

import pytest

from guestcomms import storage
from guestcomms.models import (
    Conversation,
    MessageLogEntry,
    MessageStatus,
    PAUSED_REASON,
    RESERVATION_CANCELLED_REASON,
)
from guestcomms.scheduler import MessageScheduler
from guestcomms.storage import SessionLocal

NOW = datetime(2025, 6, 1, 8, 30, tzinfo=timezone.utc)

RESERVATION = {
    "id": 4242,
    "listingTimeZoneName": "Europe/London",
    "arrivalDate": "2025-06-10",
    "departureDate": "2025-06-14",
    "guestName": "Ada Lovelace",
    "reservationDate": "2025-06-01 09:00:00",
}


@pytest.fixture
def scheduler(pipeline):
    return pipeline.scheduler


def entries(db, **filters):
    db.expire_all()
    return db.query(MessageLogEntry).filter_by(**filters).all()


class TestScheduleReservation:
    def test_event_schedules_all_plans(self, db, tenant, scheduler):
        message_ids = scheduler.schedule_reservation(tenant, RESERVATION, now=NOW)

        assert len(message_ids) == 7
        pending = entries(db, status=MessageStatus.PENDING.value)
        assert len(pending) == 7
        assert {e.booking_id for e in pending} == {"4242"}
        assert {e.meta["tenantId"] for e in pending} == {tenant.id}
        assert all(e.meta["initialSync"] is False for e in pending)

    def test_scheduling_is_idempotent(self, db, tenant, scheduler):
        first = scheduler.schedule_reservation(tenant, RESERVATION, now=NOW)
        second = scheduler.schedule_reservation(tenant, RESERVATION, now=NOW)

        assert first == second
        assert len(entries(db)) == 7
        assert db.query(Conversation).count() == 1

    def test_initial_sync_then_event_only_adds_event_types(self, db, tenant, scheduler):
        synced = scheduler.schedule_reservation(tenant, RESERVATION, initial_sync=True, now=NOW)
        event = scheduler.schedule_reservation(tenant, RESERVATION, now=NOW)

        assert len(synced) == 5
        assert set(synced) < set(event)
        assert len(entries(db)) == 7

    def test_thread_is_linked_when_found(self, db, tenant, scheduler, pms):
        pms.threads["4242"] = [
            {"id": 1, "type": "host-guest-email"},
            {"id": 2, "type": "host-guest-channel"},
        ]

        scheduler.schedule_reservation(tenant, RESERVATION, now=NOW)

        conversation = storage.find_conversation_by_booking(db, tenant.id, "4242")
        assert conversation.external_thread_id == "2"
        assert {e.meta["hostawayConversationId"] for e in entries(db)} == {"2"}

    def test_missing_reservation_id(self, db, tenant, scheduler):
        reservation = {k: v for k, v in RESERVATION.items() if k != "id"}

        assert scheduler.schedule_reservation(tenant, reservation, now=NOW) == []
        assert db.query(Conversation).count() == 0

    def test_no_check_in_still_creates_conversation(self, db, tenant, scheduler):
        assert scheduler.schedule_reservation(tenant, {"id": "R9"}, now=NOW) == []
        assert storage.find_conversation_by_booking(db, tenant.id, "R9") is not None
        assert entries(db) == []

    def test_cancelled_reservation_cancels_queued_jobs(self, db, tenant, scheduler):
        scheduler.schedule_reservation(tenant, RESERVATION, now=NOW)

        result = scheduler.schedule_reservation(tenant, {**RESERVATION, "status": "cancelled"}, now=NOW)

        assert result == []
        failed = entries(db, status=MessageStatus.FAILED.value)
        assert len(failed) == 7
        assert {e.error_message for e in failed} == {RESERVATION_CANCELLED_REASON}

    def test_cancel_unknown_reservation(self, tenant, scheduler):
        assert scheduler.cancel_reservation_messages(tenant, "nope") == 0


class TestHandleEvent:
    def test_reservation_created(self, db, tenant, scheduler):
        scheduler.handle_event(tenant.id, {"event": "reservation.created", "reservation": RESERVATION})

        assert len(entries(db)) >= 5

    def test_reservation_updated_to_cancelled(self, db, tenant, scheduler):
        scheduler.handle_event(tenant.id, {"event": "reservation_created", **RESERVATION})
        scheduler.handle_event(tenant.id, {"event": "reservation.updated", **RESERVATION, "status": "cancelled"})

        assert entries(db, status=MessageStatus.PENDING.value) == []

    def test_unknown_event_is_ignored(self, db, tenant, scheduler):
        scheduler.handle_event(tenant.id, {"event": "listing.updated"})

        assert entries(db) == []

    def test_errors_are_not_raised(self, db, scheduler):
        scheduler.handle_event("no-such-tenant", {"event": "reservation.created", "reservation": RESERVATION})

        assert entries(db) == []


class TestIncomingMessage:
    PAYLOAD = {
        "event": "message.received",
        "reservationId": "R1",
        "id": "hm-1",
        "body": "Is there parking?",
    }

    def test_guest_message_is_logged_and_answered(self, db, tenant, scheduler, pms, replies):
        reply_id = scheduler.handle_incoming_message(tenant, dict(self.PAYLOAD))

        guest = entries(db, originator="guest")
        assert [e.body for e in guest] == ["Is there parking?"]
        reply = storage.get_message(db, reply_id)
        assert reply.status == MessageStatus.SENT.value
        assert reply.body == replies.reply
        assert reply.meta["messageType"] == "ai_reply"
        assert reply.meta["guestMessageLogId"] == guest[0].id
        assert pms.reservation_sends == [(tenant.id, "R1", replies.reply)]
        assert replies.calls[0][3]["guestMessageLogId"] == guest[0].id

    def test_duplicate_delivery_is_answered_once(self, db, tenant, scheduler, pms, replies):
        first = scheduler.handle_incoming_message(tenant, dict(self.PAYLOAD))
        assert scheduler.handle_incoming_message(tenant, dict(self.PAYLOAD)) == first

        assert len(entries(db, originator="guest")) == 1
        assert len(entries(db, originator="ai")) == 1
        assert len(replies.calls) == 1
        assert len(pms.sends) == 1

    def test_redelivery_after_generator_failure_is_answered(self, db, tenant, scheduler, pms, replies):
        generate_reply = replies.generate_reply

        def fail_once(*args):
            replies.generate_reply = generate_reply
            raise RuntimeError("model timeout")

        replies.generate_reply = fail_once
        scheduler.handle_event(tenant.id, dict(self.PAYLOAD))

        assert len(entries(db, originator="guest")) == 1
        assert entries(db, originator="ai") == []
        assert pms.sends == []

        reply_id = scheduler.handle_incoming_message(tenant, dict(self.PAYLOAD))

        assert storage.get_message(db, reply_id).status == MessageStatus.SENT.value
        assert len(entries(db, originator="guest")) == 1
        assert len(replies.calls) == 1
        assert pms.reservation_sends == [(tenant.id, "R1", replies.reply)]

    def test_hash_dedup_without_message_id(self, db, tenant, scheduler):
        payload = {
            "event": "message.received",
            "reservationId": "R1",
            "body": "Hello",
            "createdAt": "2025-06-01T10:00:00Z",
        }

        scheduler.handle_incoming_message(tenant, dict(payload))
        scheduler.handle_incoming_message(tenant, dict(payload))

        guest = entries(db, originator="guest")
        assert len(guest) == 1
        assert guest[0].meta["messageHash"] == "Hello_2025-06-01T10:00:00Z"

    def test_keyword_message_gets_auto_reply_before_ai_reply(self, db, tenant, scheduler, pms, templates, replies):
        templates.templates["message_received_keyword"] = "Hi {{guestName}}, parking details for {{propertyName}} are in the guide."
        pms.reservations["R1"] = {"id": "R1", "guestName": "Ada"}
        payload = dict(self.PAYLOAD, conversationId="t9", listingName="Flat B")

        scheduler.handle_incoming_message(tenant, payload)
        scheduler.handle_incoming_message(tenant, payload)

        assert [(s[1], s[2], s[3]) for s in pms.conversation_sends] == [
            ("t9", "Hi Ada, parking details for Flat B are in the guide.", "channel"),
            ("t9", replies.reply, "channel"),
        ]
        keyword = [e for e in entries(db, originator="ai") if e.meta["messageType"] == "message_received_keyword"]
        assert len(keyword) == 1
        assert keyword[0].status == MessageStatus.SENT.value
        assert keyword[0].meta["guestMessageLogId"] == entries(db, originator="guest")[0].id

    def test_no_keyword_template_sends_only_ai_reply(self, db, tenant, scheduler, pms, replies):
        scheduler.handle_incoming_message(tenant, dict(self.PAYLOAD))

        assert [s[2] for s in pms.sends] == [replies.reply]

    def test_keyword_reply_is_not_sent_while_paused(self, db, tenant, scheduler, pms, templates, make_conversation):
        templates.templates["message_received_keyword"] = "Parking is free on site."
        conversation = make_conversation("R1")
        storage.set_conversation_status(db, tenant.id, conversation.id, "paused_by_human")

        scheduler.handle_incoming_message(tenant, dict(self.PAYLOAD))

        keyword = [e for e in entries(db, originator="ai") if e.meta["messageType"] == "message_received_keyword"]
        assert [(e.status, e.error_message) for e in keyword] == [(MessageStatus.FAILED.value, PAUSED_REASON)]
        assert pms.sends == []

    def test_paused_conversation_gets_no_reply(self, db, tenant, scheduler, pms, make_conversation):
        conversation = make_conversation("R1")
        storage.set_conversation_status(db, tenant.id, conversation.id, "paused_by_human")

        reply_id = scheduler.handle_incoming_message(tenant, dict(self.PAYLOAD))

        reply = storage.get_message(db, reply_id)
        assert reply.status == MessageStatus.FAILED.value
        assert reply.error_message == PAUSED_REASON
        assert pms.sends == []

    def test_no_reply_generator(self, db, tenant, tenants, pms, pipeline):
        scheduler = MessageScheduler(SessionLocal, tenants, pms, pipeline.executor, reply_generator=None)

        assert scheduler.handle_incoming_message(tenant, dict(self.PAYLOAD)) is None
        assert len(entries(db, originator="guest")) == 1
        assert entries(db, originator="ai") == []

    def test_message_without_body_is_skipped(self, db, tenant, scheduler):
        assert scheduler.handle_incoming_message(tenant, {"reservationId": "R1"}) is None
        assert entries(db) == []

    def test_history_is_imported_without_duplicating_the_webhook_message(self, db, tenant, scheduler, pms):
        pms.threads["R1"] = [{"id": "t1", "type": "host-guest-channel"}]
        pms.thread_messages["t1"] = [
            {"id": "hm-0", "body": "Welcome to Cross Road!", "isIncoming": 0, "date": "2025-06-01 09:00:00"},
            {"id": "hm-1", "body": "Is there parking?", "isIncoming": 1, "date": "2025-06-01 10:00:00"},
        ]

        scheduler.handle_incoming_message(tenant, dict(self.PAYLOAD))

        assert [e.body for e in entries(db, originator="guest")] == ["Is there parking?"]
        history = entries(db, originator="human")
        assert [e.body for e in history] == ["Welcome to Cross Road!"]
        assert history[0].meta["syncedFromHistory"] is True
        assert history[0].actual_sent_at == datetime(2025, 6, 1, 9, 0, tzinfo=timezone.utc)
        # Thread found during lookup is used for the reply
        assert [s[1] for s in pms.conversation_sends] == ["t1"]

    def test_history_sync_is_repeatable(self, db, tenant, scheduler, pms, make_conversation):
        conversation = make_conversation("R1")
        pms.threads["R1"] = [{"id": "t1"}]
        pms.thread_messages["t1"] = [{"id": "a", "body": "Hi", "isIncoming": True}]

        assert scheduler.sync_conversation_history(tenant, conversation.id, "R1") == 1
        assert scheduler.sync_conversation_history(tenant, conversation.id, "R1") == 0
