"""Weekly availability template and blackout helpers for parkings."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Sequence

from django.core.exceptions import PermissionDenied, ValidationError
from django.db import transaction
from django.shortcuts import get_object_or_404
from django.utils import timezone

from .models import AvailabilitySlot, Blackout, Parking

logger = logging.getLogger(__name__)

TIME_RE = re.compile(r"^\d{2}:\d{2}(:\d{2})?$")
MINUTES_PER_DAY = 24 * 60
# Persisted times clamp to 23:59, so a slot ending there runs to midnight.
LAST_MINUTE = MINUTES_PER_DAY - 1


@dataclass(frozen=True)
class SlotInput:
    weekday: int
    start_time: str
    end_time: str
    enabled: bool


def _time_to_seconds(value: str) -> int:
    parts = [int(part) for part in value.split(":")]
    while len(parts) < 3:
        parts.append(0)
    hours, minutes, seconds = parts[:3]
    return hours * 3600 + minutes * 60 + seconds


def _component(raw: str | None) -> int:
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        return 0


def clamp_time(value: str | None) -> str:
    """
    Normalize a persisted time into "HH:MM" within [00:00, 23:59].

    Non-numeric components read as 0; hours clamp to [0, 23] and minutes to [0, 59].
    """
    raw_hours, _, rest = str(value or "").partition(":")
    raw_minutes = rest.partition(":")[0]
    hours = min(max(_component(raw_hours), 0), 23)
    minutes = min(max(_component(raw_minutes), 0), 59)
    return f"{hours:02d}:{minutes:02d}"


def _slot_minutes(value: str | None) -> int:
    raw_hours, _, rest = str(value or "").partition(":")
    return _component(raw_hours) * 60 + _component(rest.partition(":")[0])


def validate_slots(raw_slots: object) -> list[SlotInput]:
    """
    Validate a submitted slot list and return normalized inputs.

    Errors are collected for every slot and raised together, keyed by the
    slot's position in the list.
    """
    if not isinstance(raw_slots, list):
        raise ValidationError({"slots": ["Expected a list of slots."]})

    errors: dict[str, list[str]] = {}
    cleaned: list[SlotInput] = []
    for index, raw in enumerate(raw_slots):
        slot_errors: list[str] = []
        if not isinstance(raw, dict):
            errors[f"slots[{index}]"] = ["Each slot must be an object."]
            continue

        weekday = raw.get("weekday")
        if isinstance(weekday, bool) or not isinstance(weekday, int) or not 1 <= weekday <= 7:
            slot_errors.append("weekday must be an integer between 1 and 7.")

        start_time = str(raw.get("start_time") or "").strip()
        end_time = str(raw.get("end_time") or "").strip()
        times_ok = True
        for label, value in (("start_time", start_time), ("end_time", end_time)):
            if not TIME_RE.match(value):
                slot_errors.append(f"{label} must use HH:MM or HH:MM:SS.")
                times_ok = False

        enabled = raw.get("enabled", True)
        if not isinstance(enabled, bool):
            slot_errors.append("enabled must be a boolean.")
        elif enabled and times_ok and _time_to_seconds(end_time) <= _time_to_seconds(start_time):
            slot_errors.append("end_time must be after start_time.")

        if slot_errors:
            errors[f"slots[{index}]"] = slot_errors
            continue
        cleaned.append(
            SlotInput(weekday=weekday, start_time=start_time, end_time=end_time, enabled=enabled)
        )

    if errors:
        raise ValidationError(errors)
    return cleaned


def replace_availability(parking_id: int, caller, raw_slots: object) -> list[AvailabilitySlot]:
    """
    Replace every weekly slot of a parking with the submitted set.

    Only the persisted owner may write. The delete and insert happen in one
    transaction so readers see either the old or the new template.
    """
    parking = get_object_or_404(Parking, pk=parking_id)
    if parking.owner_id != getattr(caller, "id", None):
        raise PermissionDenied("Only the parking owner can edit availability.")

    slots = validate_slots(raw_slots)
    with transaction.atomic():
        AvailabilitySlot.objects.filter(parking=parking).delete()
        created = AvailabilitySlot.objects.bulk_create(
            [
                AvailabilitySlot(
                    parking=parking,
                    weekday=slot.weekday,
                    start_time=slot.start_time,
                    end_time=slot.end_time,
                    enabled=slot.enabled,
                )
                for slot in slots
            ]
        )
    logger.info("parkings: availability replaced for parking %s (%s slots)", parking.id, len(created))
    return created


def get_availability(parking_id: int) -> list[dict]:
    """Return the parking's slots ordered by weekday with clamped "HH:MM" times."""
    get_object_or_404(Parking, pk=parking_id)
    slots = AvailabilitySlot.objects.filter(parking_id=parking_id).order_by(
        "weekday", "start_time", "id"
    )
    return [
        {
            "id": slot.id,
            "weekday": slot.weekday,
            "start_time": clamp_time(slot.start_time),
            "end_time": clamp_time(slot.end_time),
            "enabled": slot.enabled,
        }
        for slot in slots
    ]


def _covered_by_one_slot(
    weekday: int, start_minute: int, end_minute: int, slots: Sequence[AvailabilitySlot]
) -> bool:
    for slot in slots:
        if not slot.enabled or slot.weekday != weekday:
            continue
        slot_start = _slot_minutes(slot.start_time)
        slot_end = _slot_minutes(slot.end_time)
        if slot_end >= LAST_MINUTE:
            slot_end = MINUTES_PER_DAY
        if slot_end <= slot_start:
            continue
        if slot_start <= start_minute and slot_end >= end_minute:
            return True
    return False


def window_within_availability(
    start: datetime, end: datetime, slots: Iterable[AvailabilitySlot]
) -> bool:
    """
    Return True when every local-day segment of [start, end) fits in one enabled slot.

    A parking without any slot rows is treated as always open.
    """
    slots = list(slots)
    if not slots:
        return True
    if end <= start:
        return False

    tz = timezone.get_current_timezone()
    local_start = timezone.localtime(start, tz)
    local_end = timezone.localtime(end, tz)

    cursor = local_start
    while cursor < local_end:
        next_midnight = timezone.make_aware(
            datetime.combine(cursor.date() + timedelta(days=1), datetime.min.time()), tz
        )
        segment_end = min(next_midnight, local_end)
        start_minute = cursor.hour * 60 + cursor.minute
        if segment_end == next_midnight:
            end_minute = MINUTES_PER_DAY
        else:
            end_minute = segment_end.hour * 60 + segment_end.minute
        if not _covered_by_one_slot(cursor.isoweekday(), start_minute, end_minute, slots):
            return False
        cursor = segment_end
    return True


def overlapping_blackouts(parking: Parking, start: datetime, end: datetime):
    """Return blackouts of the parking intersecting the half-open window [start, end)."""
    return Blackout.objects.filter(parking=parking, start_time__lt=end, end_time__gt=start)


def validate_blackout_window(start: datetime | None, end: datetime | None) -> None:
    if not start or not end:
        raise ValidationError({"non_field_errors": ["Start and end are required."]})
    if end <= start:
        raise ValidationError({"end_time": ["End must be after start."]})
