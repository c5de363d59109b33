"""
Schedule planner: turns a reservation snapshot into timestamped message plans.

Pure apart from logging. All arithmetic happens on aware datetimes in the
reservation's zone, so "24 hours before check-in" and "08:00 on checkout day"
are wall-clock offsets that follow DST changes.
"""

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from guestcomms.utils import read_number, read_string, utcnow

logger = logging.getLogger(__name__)

THANK_YOU_IMMEDIATE = "thank_you_immediate"
PRE_ARRIVAL_24H = "pre_arrival_24h"
DOOR_CODE_3H = "door_code_3h"
SAME_DAY_CHECKIN = "same_day_checkin"
CHECKOUT_MORNING = "checkout_morning"
POST_BOOKING_FOLLOWUP = "post_booking_followup"
PRE_CHECKOUT_EVENING = "pre_checkout_evening"

LABELS = {
    THANK_YOU_IMMEDIATE: "Booking Confirmation",
    PRE_ARRIVAL_24H: "24h Pre-Arrival Instructions",
    DOOR_CODE_3H: "3h Pre-Check-in Door Code",
    SAME_DAY_CHECKIN: "Same-Day Booking Instant Code",
    CHECKOUT_MORNING: "Checkout Morning Reminder",
    POST_BOOKING_FOLLOWUP: "Post-booking Follow-up",
    PRE_CHECKOUT_EVENING: "Pre-Checkout Evening Reminder",
}

PROACTIVE_MESSAGE_TYPES = frozenset(LABELS)

# Only produced for live events, never during a bulk initial sync
EVENT_ONLY_MESSAGE_TYPES = frozenset({THANK_YOU_IMMEDIATE, POST_BOOKING_FOLLOWUP})

TIMEZONE_PATHS = (
    "listingTimeZoneName",
    "timezone",
    "listing.timezone",
    "property.timezone",
    "unit.timezone",
)
CHECK_IN_PATHS = (
    "checkIn", "check_in", "startDate", "start_date",
    "arrivalDate", "arrival_date", "arrival", "start",
)
CHECK_IN_TIME_PATHS = ("checkInTime", "check_in_time", "checkIn.time", "check_in.time")
CHECK_OUT_PATHS = (
    "checkOut", "check_out", "endDate", "end_date",
    "departureDate", "departure_date", "departure", "end",
)
CHECK_OUT_TIME_PATHS = ("checkOutTime", "check_out_time", "checkOut.time", "check_out.time")
RESERVATION_DATE_PATHS = ("reservationDate", "reservation_date")

DEFAULT_CHECK_IN_HOUR = 15
DEFAULT_CHECK_OUT_HOUR = 10
CHECKOUT_MORNING_HOUR = 8
PRE_CHECKOUT_EVENING_HOUR = 18

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DATE_HOUR = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}$")


@dataclass(frozen=True)
class MessagePlan:
    message_type: str
    label: str
    scheduled_send_at: datetime  # UTC
    scheduled_local: datetime  # aware, in the reservation zone
    timezone: str
    guest_name: str


def resolve_timezone(reservation: Mapping[str, Any]) -> str:
    """Reservation zone name, falling back to UTC when absent or unknown."""
    name = read_string(reservation, *TIMEZONE_PATHS)
    if not name:
        return "UTC"
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone '{name}', falling back to UTC")
        return "UTC"
    return name


def build_guest_name(reservation: Mapping[str, Any]) -> str:
    explicit = read_string(reservation, "guestName", "guest_name", "guest.name")
    if explicit:
        return explicit

    first = read_string(reservation, "guest.firstName", "guest_first_name", "guest.first_name", "guest_firstname")
    last = read_string(reservation, "guest.lastName", "guest_last_name", "guest.last_name", "guest_lastname")
    combined = " ".join(part for part in (first, last) if part)
    return combined or "Guest"


def normalize_hour(value: Optional[float], fallback: int) -> int:
    if value is None or not math.isfinite(value):
        value = fallback
    return max(0, min(23, int(round(value))))


def parse_local_datetime(value: str, zone: ZoneInfo, hour: int = 0) -> Optional[datetime]:
    """
    Interpret a provider date string in the given zone.

    Date-only values get ``hour``; values with an explicit offset are absolute
    instants and are converted into the zone.
    """
    text = value.strip()
    if _DATE_ONLY.match(text):
        text = f"{text}T{hour:02d}:00:00"
    elif _DATE_HOUR.match(text):
        text = f"{text}:00:00"
    if text.endswith(("Z", "z")):
        text = f"{text[:-1]}+00:00"

    try:
        # fromisoformat also accepts a space between date and time
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.warning(f"Unable to interpret reservation date '{value}' for timezone {zone.key}")
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=zone)
    return parsed.astimezone(zone)


def _resolve_anchor(reservation, zone, date_paths, time_paths, fallback_hour) -> Optional[datetime]:
    value = read_string(reservation, *date_paths)
    if not value:
        reservation_id = read_string(reservation, "id", "reservationId", "reservation_id")
        logger.debug(f"Reservation {reservation_id} missing date in paths: {', '.join(date_paths)}")
        return None
    hour = normalize_hour(read_number(reservation, *time_paths), fallback_hour)
    return parse_local_datetime(value, zone, hour)


def plan_messages(
    reservation: Mapping[str, Any],
    initial_sync: bool = False,
    now: Optional[datetime] = None,
    followup_hours: float = 6.0,
) -> list:
    """
    Compute the proactive message plans for a reservation.

    Args:
        reservation: Provider reservation snapshot
        initial_sync: Bulk import mode; event-only types are skipped
        now: Reference time (defaults to the current time)
        followup_hours: Delay of the post-booking follow-up after booking

    Returns:
        List of MessagePlan in emission order. Empty when no usable check-in
        can be resolved.
    """
    now = (now or utcnow()).astimezone(timezone.utc)
    tz_name = resolve_timezone(reservation)
    zone = ZoneInfo(tz_name)
    guest_name = build_guest_name(reservation)

    check_in = _resolve_anchor(reservation, zone, CHECK_IN_PATHS, CHECK_IN_TIME_PATHS, DEFAULT_CHECK_IN_HOUR)
    if check_in is None:
        logger.debug(f"No usable check-in for reservation {read_string(reservation, 'id')}, nothing planned")
        return []
    check_out = _resolve_anchor(reservation, zone, CHECK_OUT_PATHS, CHECK_OUT_TIME_PATHS, DEFAULT_CHECK_OUT_HOUR)

    now_local = now.astimezone(zone)
    plans = []

    def push(message_type: str, proposed_local: Optional[datetime]) -> None:
        local = proposed_local or now_local
        # Same zone on both sides, so this compares wall-clock times
        if local < now_local:
            local = now_local
        send_at = local.astimezone(timezone.utc)
        if send_at < now:
            send_at = now
        plans.append(
            MessagePlan(
                message_type=message_type,
                label=LABELS[message_type],
                scheduled_send_at=send_at,
                scheduled_local=local,
                timezone=tz_name,
                guest_name=guest_name,
            )
        )

    if not initial_sync:
        push(THANK_YOU_IMMEDIATE, None)

    push(PRE_ARRIVAL_24H, check_in - timedelta(hours=24))
    push(DOOR_CODE_3H, check_in - timedelta(hours=3))
    push(SAME_DAY_CHECKIN, check_in)

    if check_out is not None:
        checkout_day = check_out.replace(hour=0, minute=0, second=0, microsecond=0)
        push(CHECKOUT_MORNING, checkout_day.replace(hour=CHECKOUT_MORNING_HOUR))
        push(PRE_CHECKOUT_EVENING, (checkout_day - timedelta(days=1)).replace(hour=PRE_CHECKOUT_EVENING_HOUR))

    if not initial_sync:
        booked = read_string(reservation, *RESERVATION_DATE_PATHS)
        booked_local = parse_local_datetime(booked, zone) if booked else None
        if booked_local is not None:
            push(POST_BOOKING_FOLLOWUP, booked_local + timedelta(hours=followup_hours))

    logger.debug(f"Planned {len(plans)} messages in {tz_name} (initial_sync={initial_sync})")
    return plans
