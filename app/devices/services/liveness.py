"""Single derivation of device liveness.

Every consumer (registry listing, verifier, operator dashboard, health poll)
goes through these functions; ``is_online`` is never stored.
"""
from __future__ import annotations

from datetime import datetime, timedelta

from django.conf import settings
from django.utils import timezone

from devices.models import Device


def online_threshold(device: Device) -> timedelta:
    return timedelta(seconds=device.online_threshold_seconds())


def is_online(device: Device, now: datetime | None = None) -> bool:
    if device.last_heartbeat_at is None:
        return False
    now = now or timezone.now()
    return now - device.last_heartbeat_at < online_threshold(device)


def can_mediate_entry(device: Device, now: datetime | None = None) -> bool:
    return device.status == Device.STATUS_ACTIVE and is_online(device, now=now)


def is_healthy(device: Device, now: datetime | None = None) -> bool:
    free_heap = (device.system_info or {}).get("freeHeap") or 0
    try:
        free_heap = int(free_heap)
    except (TypeError, ValueError):
        free_heap = 0
    return can_mediate_entry(device, now=now) and free_heap > settings.DEVICE_HEALTHY_MIN_FREE_HEAP


def seconds_since_heartbeat(device: Device, now: datetime | None = None) -> int | None:
    if device.last_heartbeat_at is None:
        return None
    now = now or timezone.now()
    return max(0, int((now - device.last_heartbeat_at).total_seconds()))
