from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from access.credentials import Method
from access.models import AccessAttempt
from attendance.models import AttendanceRecord
from facilities.models import AccessProfile, Facility


logger = logging.getLogger(__name__)


class NotAttendanceEvent(ValueError):
    """The attempt cannot produce an attendance record."""


@dataclass(frozen=True)
class AttendanceStats:
    total_days: int
    this_month: int
    today: int
    average_per_week: int
    current_streak: int

    def as_dict(self) -> dict:
        return asdict(self)


def record(member, facility: Facility, timestamp: datetime | None = None, *, device=None) -> AttendanceRecord:
    return AttendanceRecord.objects.create(
        member=member,
        facility=facility,
        device=device,
        timestamp=timestamp or timezone.now(),
    )


def record_for_attempt(attempt: AccessAttempt) -> tuple[AttendanceRecord, bool]:
    """Append the attendance fact for a granted member attempt, once.

    Replays of the same attempt return the existing record.
    """
    if not attempt.is_granted:
        raise NotAttendanceEvent("Only granted attempts produce attendance")
    if attempt.source == AccessAttempt.SOURCE_CLIENT:
        raise NotAttendanceEvent("Client-reported attempts do not produce attendance")
    if attempt.method != Method.QR:
        raise NotAttendanceEvent("Only member QR entries produce attendance")
    if attempt.subject_id is None or attempt.facility_id is None:
        raise NotAttendanceEvent("Attempt has no member or facility")

    profile = AccessProfile.objects.filter(user_id=attempt.subject_id).first()
    if profile is None or not profile.is_member:
        raise NotAttendanceEvent("Attendance is only recorded for members")

    existing = AttendanceRecord.objects.filter(attempt=attempt).first()
    if existing:
        return existing, False

    try:
        with transaction.atomic():
            created = AttendanceRecord.objects.create(
                member_id=attempt.subject_id,
                facility_id=attempt.facility_id,
                device_id=attempt.device_id,
                attempt=attempt,
                timestamp=attempt.created_at,
            )
    except IntegrityError:
        existing = AttendanceRecord.objects.filter(attempt=attempt).first()
        if existing:
            return existing, False
        raise

    logger.info(
        "Attendance recorded",
        extra={"member": attempt.subject_id, "facility": attempt.facility_id, "event_id": str(attempt.event_id)},
    )
    return created, True


def _local_day(value: datetime) -> date:
    return timezone.localtime(value).date()


def current_streak(days: list[date], today: date) -> int:
    """Consecutive calendar days with attendance, counting back from today."""
    streak = 0
    expected = today
    for day in sorted(set(days), reverse=True):
        if day > expected:
            continue
        if day != expected:
            break
        streak += 1
        expected = expected - timedelta(days=1)
    return streak


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def stats_for(member, as_of: datetime | None = None) -> AttendanceStats:
    as_of = as_of or timezone.now()
    today = _local_day(as_of)
    weeks = settings.ATTENDANCE_AVERAGE_WINDOW_WEEKS

    timestamps = list(
        AttendanceRecord.objects.filter(member=member, timestamp__lte=as_of)
        .order_by("-timestamp")
        .values_list("timestamp", flat=True)
    )
    days = [_local_day(ts) for ts in timestamps]
    window_start = as_of - timedelta(weeks=weeks)

    return AttendanceStats(
        total_days=len(timestamps),
        this_month=sum(1 for day in days if day.year == today.year and day.month == today.month),
        today=sum(1 for day in days if day == today),
        average_per_week=_round_half_up(sum(1 for ts in timestamps if ts >= window_start) / weeks),
        current_streak=current_streak(days, today),
    )


def facility_stats(facility: Facility, as_of: datetime | None = None) -> dict:
    as_of = as_of or timezone.now()
    today = _local_day(as_of)
    records = list(
        AttendanceRecord.objects.filter(
            facility=facility,
            timestamp__lte=as_of,
            timestamp__gte=as_of - timedelta(days=31),
        ).values_list("member_id", "timestamp")
    )

    today_records = [(member_id, ts) for member_id, ts in records if _local_day(ts) == today]
    return {
        "today": len(today_records),
        "unique_members_today": len({member_id for member_id, _ in today_records}),
        "this_month": sum(
            1 for _, ts in records if _local_day(ts).year == today.year and _local_day(ts).month == today.month
        ),
    }
