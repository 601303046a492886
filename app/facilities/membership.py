"""Membership status resolution.

Status is always derived from the end date (and the explicit flag) at read
time. Access decisions call :func:`resolve_profile` directly; only UI gating
goes through :func:`cached_membership_state`, whose entries carry an explicit
TTL.
"""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from datetime import date, datetime, time

from django.conf import settings
from django.core.cache import cache
from django.utils import timezone

from facilities.models import AccessProfile, membership_cache_key

STATUS_ACTIVE = "active"
STATUS_EXPIRED = "expired"

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass(frozen=True)
class MembershipState:
    status: str
    days_remaining: int | None
    end_date: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    def as_dict(self) -> dict:
        data = asdict(self)
        data["end_date"] = self.end_date.isoformat() if self.end_date else None
        return data


def _as_aware_datetime(value: datetime | date) -> datetime:
    if not isinstance(value, datetime):
        value = datetime.combine(value, time.min)
    if timezone.is_naive(value):
        return timezone.make_aware(value, timezone.get_current_timezone())
    return value


def days_remaining(end_date: datetime | date, now: datetime | None = None) -> int:
    now = now or timezone.now()
    delta = _as_aware_datetime(end_date) - now
    return max(0, math.ceil(delta.total_seconds() / SECONDS_PER_DAY))


def resolve(
    end_date: datetime | date | None,
    status_flag: str | None = None,
    *,
    now: datetime | None = None,
) -> MembershipState:
    """Turn membership dates and the explicit flag into a MembershipState.

    No end date means a grandfathered account, which is active. Otherwise the
    date-derived state is OR'd with an explicit "Active" flag, so an
    administrative override keeps an otherwise expired membership active.
    """
    if end_date is None:
        return MembershipState(status=STATUS_ACTIVE, days_remaining=None)

    remaining = days_remaining(end_date, now=now)
    flag_active = (status_flag or "").strip().lower() == STATUS_ACTIVE
    status = STATUS_ACTIVE if remaining > 0 or flag_active else STATUS_EXPIRED
    return MembershipState(status=status, days_remaining=remaining, end_date=_as_aware_datetime(end_date))


def resolve_profile(profile: AccessProfile, *, now: datetime | None = None) -> MembershipState:
    return resolve(profile.membership_end_date, profile.membership_status, now=now)


def cached_membership_state(profile: AccessProfile, ttl: int | None = None) -> MembershipState:
    ttl = settings.MEMBERSHIP_STATUS_CACHE_TTL_SECONDS if ttl is None else ttl
    key = membership_cache_key(profile.pk)
    cached = cache.get(key)
    if cached is not None:
        return cached

    state = resolve_profile(profile)
    if ttl > 0:
        cache.set(key, state, ttl)
    return state
