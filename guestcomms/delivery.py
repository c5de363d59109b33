"""
Delivery executor: turns one claimed job into a sent or failed message.

The executor composes the final body at send time, picks a channel (direct
phone message, PMS conversation thread, or PMS per-reservation send) and
settles the job. Settlement is conditional on the job still being in
``processing``, so a job cancelled mid-flight is never flipped to ``sent``.
"""

import logging
import threading
import time
from datetime import date
from typing import Callable, Optional

from guestcomms import storage
from guestcomms.metrics import record_message_settled
from guestcomms.models import (
    ConversationStatus,
    MessageStatus,
    PAUSED_REASON,
    RESERVATION_CANCELLED_REASON,
)
from guestcomms.planner import (
    CHECKOUT_MORNING,
    DOOR_CODE_3H,
    PRE_ARRIVAL_24H,
    PROACTIVE_MESSAGE_TYPES,
    SAME_DAY_CHECKIN,
    THANK_YOU_IMMEDIATE,
)
from guestcomms.providers import (
    PREFERRED_THREAD_TYPES,
    DirectMessenger,
    PmsClient,
    TemplateProvider,
    Tenant,
    TenantProvider,
)
from guestcomms.storage import ClaimedMessage
from guestcomms.utils import read_string, utcnow

logger = logging.getLogger(__name__)

AI_REPLY = "ai_reply"
KEYWORD_REPLY = "message_received_keyword"

# Jobs whose body is fixed when they are queued
STORED_BODY_TYPES = frozenset({AI_REPLY, KEYWORD_REPLY})

REPLY_KEYWORDS = ("wifi", "parking")

DIRECT_MESSAGE = "direct_message"
PMS_CONVERSATION = "pms_conversation"
PMS_RESERVATION = "pms_reservation"

NOT_AVAILABLE = "Not available"

GUEST_PHONE_PATHS = (
    "guestPhone", "guest_phone", "phone",
    "guest.phone", "guest.contact.phone", "guest.phone_number",
)
LISTING_ID_PATHS = (
    "listingMapId", "listing_map_id", "listingId",
    "listing_id", "propertyId", "property_id",
)
THREAD_ID_PATHS = ("id", "conversationId", "conversation_id")
THREAD_RESERVATION_PATHS = ("reservationId", "reservation_id", "reservation.id", "hostawayReservationId")


class DeliverySkipped(Exception):
    """A job that must not be sent (paused conversation, cancelled reservation)."""


class ConversationNotFoundError(LookupError):
    pass


class ListingCache:
    """
    Per-process listing cache keyed by (tenant, listing).

    Entries expire after ``ttl_seconds``. Door-code sends invalidate their
    entry so a code generated shortly before check-in is picked up.
    """

    def __init__(self, ttl_seconds: float = 1800, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries = {}
        self._lock = threading.Lock()

    def get(self, tenant_id: str, listing_id: str) -> Optional[dict]:
        with self._lock:
            entry = self._entries.get((tenant_id, listing_id))
            if entry is None:
                return None
            stored_at, listing = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._entries[(tenant_id, listing_id)]
                return None
            return listing

    def put(self, tenant_id: str, listing_id: str, listing: dict) -> None:
        with self._lock:
            self._entries[(tenant_id, listing_id)] = (self._clock(), listing)

    def invalidate(self, tenant_id: str, listing_id: str) -> None:
        with self._lock:
            self._entries.pop((tenant_id, listing_id), None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def resolve_thread_id(threads, reservation_id: Optional[str] = None) -> Optional[str]:
    """
    Pick the guest conversation thread among a reservation's PMS threads.

    Threads explicitly tagged with another reservation are ignored. Among the
    rest, preferred thread types win, then the first thread with an id.
    """
    if not threads:
        return None

    candidates = []
    for thread in threads:
        if not isinstance(thread, dict):
            continue
        thread_reservation = read_string(thread, *THREAD_RESERVATION_PATHS)
        if reservation_id and thread_reservation and thread_reservation != str(reservation_id):
            continue
        candidates.append(thread)

    for thread_type in PREFERRED_THREAD_TYPES:
        for thread in candidates:
            if (read_string(thread, "type") or "").lower() == thread_type:
                identifier = read_string(thread, *THREAD_ID_PATHS)
                if identifier:
                    return identifier

    for thread in candidates:
        identifier = read_string(thread, *THREAD_ID_PATHS)
        if identifier:
            return identifier

    return None


def format_date(value: Optional[str]) -> str:
    """Render a provider date as e.g. "June 10, 2025"; unparseable values pass through."""
    if not value:
        return ""
    try:
        parsed = date.fromisoformat(value.strip()[:10])
    except ValueError:
        return value
    return f"{parsed.strftime('%B')} {parsed.day}, {parsed.year}"


def _property_name(reservation: dict, listing: Optional[dict]) -> str:
    return (
        read_string(listing, "internalListingName", "name")
        or read_string(reservation, "listingName", "listing_name", "propertyName", "property_name", "listing.name", "property.name")
        or "your stay"
    )


def extract_variables(reservation: dict, listing: Optional[dict], fallback_guest_name: str) -> dict:
    """Template variables for a proactive message."""
    door_code = (
        read_string(listing, "doorSecurityCode", "door_security_code", "doorCode", "door_code")
        or read_string(reservation, "doorCode", "door_code", "accessCode", "access_code")
    )
    wifi_name = read_string(listing, "wifiUsername", "wifi_username", "wifiName", "wifi_name", "wifiNetwork", "wifi_network")
    wifi_password = read_string(listing, "wifiPassword", "wifi_password", "wifiPass", "wifi_pass")

    return {
        "guestName": read_string(reservation, "guestName", "guest_name", "guestFirstName", "guest_first_name") or fallback_guest_name,
        "propertyName": _property_name(reservation, listing),
        "doorCode": door_code or NOT_AVAILABLE,
        "wifiName": wifi_name or NOT_AVAILABLE,
        "wifiPassword": wifi_password or NOT_AVAILABLE,
        "checkInDate": format_date(read_string(reservation, "arrivalDate", "arrival_date", "checkIn", "check_in")),
        "checkOutDate": format_date(read_string(reservation, "departureDate", "departure_date", "checkOut", "check_out")),
    }


def fallback_message(message_type: str, reservation: dict, listing: Optional[dict], fallback_guest_name: str) -> str:
    """Built-in text used when the tenant has no template for a message type."""
    guest_name = read_string(reservation, "guestName", "guest_name", "guest.name") or fallback_guest_name
    property_name = _property_name(reservation, listing)
    door_code = read_string(reservation, "doorCode", "door_code", "accessCode", "access_code")
    wifi_name = read_string(listing, "wifiName", "wifi_name")
    wifi_password = read_string(listing, "wifiPassword", "wifi_password")

    wifi_details = ""
    if wifi_name and wifi_password:
        wifi_details = f" Wi-Fi {wifi_name} / {wifi_password}."
    elif wifi_name:
        wifi_details = f" Wi-Fi {wifi_name}."
    elif wifi_password:
        wifi_details = f" Wi-Fi password: {wifi_password}."

    if message_type == THANK_YOU_IMMEDIATE:
        return f"Hi {guest_name}, thanks for booking {property_name}! We're excited to host you."
    if message_type == PRE_ARRIVAL_24H:
        return (
            f"Hi {guest_name}, your stay at {property_name} is 24 hours away. "
            "Let us know if you need anything before arrival."
        )
    if message_type == DOOR_CODE_3H:
        if door_code:
            return f"Hi {guest_name}, here is your door code for {property_name}: {door_code}. Safe travels!"
        return f"Hi {guest_name}, we're preparing your door access for {property_name}. We'll send your code shortly."
    if message_type == SAME_DAY_CHECKIN:
        return f"Welcome {guest_name}! Check-in for {property_name} is available now.{wifi_details} Enjoy your stay!"
    if message_type == CHECKOUT_MORNING:
        return (
            f"Good morning {guest_name}! Wishing you a smooth checkout today. "
            "Let us know if you need a late checkout."
        )
    return f"Hello {guest_name}, we're here if you need any assistance during your stay at {property_name}."


class DeliveryExecutor:
    """
    Executes claimed jobs one at a time.

    Collaborators are injected; ``direct_messenger`` is optional and without
    it every message goes through the PMS.
    """

    def __init__(
        self,
        session_factory,
        tenants: TenantProvider,
        pms: PmsClient,
        templates: TemplateProvider,
        direct_messenger: Optional[DirectMessenger] = None,
        listing_cache: Optional[ListingCache] = None,
    ):
        self.session_factory = session_factory
        self.tenants = tenants
        self.pms = pms
        self.templates = templates
        self.direct_messenger = direct_messenger
        self.listing_cache = listing_cache if listing_cache is not None else ListingCache()

    def execute(self, job: ClaimedMessage) -> str:
        """
        Deliver one claimed job and settle it.

        Never raises: every failure is recorded on the job.

        Returns:
            The job's resulting status ("sent" or "failed").
        """
        try:
            return self._execute(job)
        except DeliverySkipped as e:
            logger.info(f"Skipping message {job.id} for tenant {job.tenant_id}: {e}")
            self._settle_failed(job, str(e), reason="policy")
        except Exception as e:
            logger.error(f"Failed to process message {job.id} for tenant {job.tenant_id}: {e}", exc_info=True)
            self._settle_failed(job, str(e), reason="error")
        return MessageStatus.FAILED.value

    def _execute(self, job: ClaimedMessage) -> str:
        message_type = job.message_type
        if not message_type:
            raise ValueError("Missing message type in metadata")

        tenant = self.tenants.get_tenant_by_id(job.tenant_id)

        with self.session_factory() as db:
            conversation = storage.get_conversation(db, job.tenant_id, job.conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(f"Conversation {job.conversation_id} not found")
            paused = conversation.status == ConversationStatus.PAUSED_BY_HUMAN.value
            thread_id = job.external_thread_id or conversation.external_thread_id

        if paused:
            raise DeliverySkipped(PAUSED_REASON)

        reservation_id = job.reservation_id
        if not reservation_id:
            raise ValueError("Reservation identifier is missing")

        reservation = self.pms.get_reservation(tenant, reservation_id) or {}

        status = (read_string(reservation, "status") or "").lower()
        if message_type in PROACTIVE_MESSAGE_TYPES and status == "cancelled":
            raise DeliverySkipped(RESERVATION_CANCELLED_REASON)

        label = job.message_label or message_type
        logger.debug(f"Processing {label} for booking {job.booking_id} (tenant {job.tenant_id})")

        if message_type in STORED_BODY_TYPES:
            body = job.body
        else:
            listing_id = read_string(reservation, *LISTING_ID_PATHS)
            if not listing_id:
                listing = None
            elif message_type == DOOR_CODE_3H:
                listing = self._refresh_listing(tenant, listing_id, self.listing_cache.get(tenant.id, listing_id))
            else:
                listing = self._get_listing(tenant, listing_id)
            body = self.compose_body(message_type, tenant, reservation, listing, job.guest_name or "Guest")

        phone_number = read_string(reservation, *GUEST_PHONE_PATHS)
        channel, thread_id = self._send(
            tenant, job.conversation_id, reservation_id, phone_number, thread_id, body,
            allow_direct=message_type != KEYWORD_REPLY,
        )

        delivery_metadata = {
            "messageType": message_type,
            "messageLabel": label,
            "scheduledSendAt": job.scheduled_send_at.isoformat() if job.scheduled_send_at else None,
            "scheduledLocalAt": job.scheduled_local_at,
            "scheduledTimezone": job.scheduled_timezone,
            "reservationId": reservation_id,
            "deliveryChannel": channel,
            "hostawayConversationId": thread_id,
        }

        with self.session_factory() as db:
            settled = storage.mark_message_sent(db, job.id, body, delivery_metadata, now=utcnow())

        if not settled:
            # Delivered, but cancelled while in flight; the cancellation stands
            record_message_settled(MessageStatus.FAILED.value, "policy")
            return MessageStatus.FAILED.value

        record_message_settled(MessageStatus.SENT.value, "delivered")
        logger.info(f"Sent {label} {job.id} via {channel} (tenant {job.tenant_id})")
        return MessageStatus.SENT.value

    def compose_body(
        self,
        message_type: str,
        tenant: Tenant,
        reservation: dict,
        listing: Optional[dict],
        fallback_guest_name: str,
    ) -> str:
        self.templates.ensure_default_templates(tenant.id)
        template = self.templates.get_template_for_message(tenant.id, message_type)

        if template is None:
            logger.warning(f"No template found for message type {message_type} for tenant {tenant.id}, using fallback")
            return fallback_message(message_type, reservation, listing, fallback_guest_name)

        variables = extract_variables(reservation, listing, fallback_guest_name)
        return self.templates.substitute_variables(template.template_body, variables)

    def compose_keyword_reply(
        self,
        tenant: Tenant,
        message_body: str,
        payload: dict,
        reservation: dict,
        guest_name: str,
    ) -> Optional[str]:
        """
        Body of the tenant's keyword auto-reply for a guest message.

        Returns None when the message mentions none of ``REPLY_KEYWORDS`` or
        the tenant has no keyword template.
        """
        lowered = (message_body or "").lower()
        if not any(keyword in lowered for keyword in REPLY_KEYWORDS):
            return None

        self.templates.ensure_default_templates(tenant.id)
        template = self.templates.get_template_for_message(tenant.id, KEYWORD_REPLY)
        if template is None:
            logger.debug(f"Tenant {tenant.id} has no keyword auto-reply template")
            return None

        listing_id = read_string(payload, "listingMapId", "listing_id", "propertyId", "property_id")
        listing = self._get_listing(tenant, listing_id) if listing_id else None

        variables = {
            "guestName": guest_name,
            "propertyName": read_string(listing, "name") or read_string(payload, "listingName") or "your stay",
            "guestPortalUrl": read_string(payload, "guestPortalUrl") or read_string(reservation, "guestPortalUrl", "guest_portal_url"),
            "checkInDate": format_date(read_string(payload, "arrivalDate") or read_string(reservation, "arrivalDate", "arrival_date")),
            "checkOutDate": format_date(read_string(payload, "departureDate") or read_string(reservation, "departureDate", "departure_date")),
        }
        return self.templates.substitute_variables(template.template_body, variables)

    def send_human_reply(self, tenant: Tenant, conversation_id: str, body: str) -> str:
        """
        Send an operator reply through the conversation's channel and log it.

        Raises:
            ValueError: empty body
            ConversationNotFoundError: unknown conversation for this tenant

        Returns:
            The id of the ``human`` log entry.
        """
        if not body or not body.strip():
            raise ValueError("Message body is required")

        with self.session_factory() as db:
            conversation = storage.get_conversation(db, tenant.id, conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
            reservation_id = conversation.booking_id
            thread_id = conversation.external_thread_id

        reservation = self.pms.get_reservation(tenant, reservation_id) or {}
        phone_number = read_string(reservation, *GUEST_PHONE_PATHS)
        thread_id = thread_id or read_string(reservation, "conversationId", "conversation.id", "conversation_id")

        channel, thread_id = self._send(tenant, conversation_id, reservation_id, phone_number, thread_id, body)

        with self.session_factory() as db:
            conversation = storage.get_conversation(db, tenant.id, conversation_id)
            entry_id = storage.log_human_reply(
                db,
                conversation,
                body,
                {
                    "deliveryChannel": channel,
                    "reservationId": reservation_id,
                    "hostawayConversationId": thread_id,
                },
            )
        logger.info(f"Human reply {entry_id} sent via {channel} in conversation {conversation_id}")
        return entry_id

    def _send(self, tenant, conversation_id, reservation_id, phone_number, thread_id, body, allow_direct=True):
        """Send through the first available channel; returns (channel, thread id)."""
        if allow_direct and phone_number and self.direct_messenger is not None:
            self.direct_messenger.send_direct_message(tenant, phone_number, body)
            return DIRECT_MESSAGE, thread_id

        if not thread_id:
            thread_id = self._lookup_thread(tenant, conversation_id, reservation_id)

        if thread_id:
            self.pms.send_conversation_message(tenant, thread_id, body, "channel")
            return PMS_CONVERSATION, thread_id

        self.pms.send_message_to_guest(tenant, reservation_id, body)
        return PMS_RESERVATION, None

    def _lookup_thread(self, tenant, conversation_id, reservation_id) -> Optional[str]:
        try:
            threads = self.pms.get_reservation_conversations(tenant, reservation_id)
            thread_id = resolve_thread_id(threads, reservation_id)
        except Exception as e:
            # Non-fatal; the per-reservation send is used instead
            logger.debug(f"Thread lookup failed for reservation {reservation_id}: {e}")
            return None

        if thread_id:
            with self.session_factory() as db:
                storage.link_external_thread(db, tenant.id, conversation_id, thread_id)
        return thread_id

    def _get_listing(self, tenant: Tenant, listing_id: str) -> Optional[dict]:
        cached = self.listing_cache.get(tenant.id, listing_id)
        if cached is not None:
            return cached
        try:
            listing = self.pms.get_listing(tenant, listing_id)
        except Exception as e:
            logger.warning(f"Failed to fetch listing {listing_id}: {e}")
            return None
        if listing:
            self.listing_cache.put(tenant.id, listing_id, listing)
        return listing

    def _refresh_listing(self, tenant: Tenant, listing_id: str, current: Optional[dict]) -> Optional[dict]:
        # Door codes can be generated shortly before check-in
        self.listing_cache.invalidate(tenant.id, listing_id)
        try:
            fresh = self.pms.get_listing(tenant, listing_id)
        except Exception as e:
            logger.warning(f"Failed to refresh listing {listing_id} for door code, using cached copy: {e}")
            return current
        if not fresh:
            return current
        self.listing_cache.put(tenant.id, listing_id, fresh)
        return fresh

    def _settle_failed(self, job: ClaimedMessage, error: str, reason: str) -> None:
        try:
            with self.session_factory() as db:
                storage.mark_message_failed(db, job.id, error)
        except Exception as e:
            logger.error(f"Could not record failure of message {job.id}: {e}")
            return
        record_message_settled(MessageStatus.FAILED.value, reason)
