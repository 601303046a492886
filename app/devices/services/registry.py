from __future__ import annotations

import logging
from datetime import datetime

from django.conf import settings
from django.core.exceptions import PermissionDenied
from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from access.errors import Deactivated, DuplicateDevice, UnknownDevice
from access.models import AuditEvent
from devices.models import Device
from facilities.models import Facility


logger = logging.getLogger(__name__)

TELEMETRY_FIELDS = ("uptime", "freeHeap", "rssi")


def normalize_device_id(device_id: str) -> str:
    return (device_id or "").strip().upper()


def _default_facility(owner) -> Facility | None:
    return Facility.objects.filter(owner=owner).order_by("id").first()


def get_device(device_id: str) -> Device:
    device = Device.objects.select_related("facility", "owner").filter(device_id=normalize_device_id(device_id)).first()
    if device is None:
        raise UnknownDevice()
    return device


def register(
    device_id: str,
    owner,
    location: str,
    *,
    facility: Facility | None = None,
    device_type: str = "NodeMCU",
    heartbeat_interval: int | None = None,
    actuator_url: str = "",
) -> tuple[Device, bool]:
    """Register a device for an operator.

    Re-registering an existing id for the same owner updates its declared
    location and returns it unchanged otherwise; another owner's id raises
    DuplicateDevice.
    """
    normalized = normalize_device_id(device_id)
    facility = facility or _default_facility(owner)

    with transaction.atomic():
        existing = Device.objects.select_for_update().filter(device_id=normalized).first()
        if existing is not None:
            if existing.owner_id != owner.pk:
                logger.warning(
                    "Device id already registered by another owner",
                    extra={"device_id": normalized, "owner": owner.pk},
                )
                raise DuplicateDevice()
            if existing.is_deactivated:
                raise Deactivated()
            existing.location = location or existing.location
            existing.save(update_fields=["location"])
            return existing, False

        try:
            with transaction.atomic():
                device = Device.objects.create(
                    device_id=normalized,
                    owner=owner,
                    facility=facility,
                    location=location,
                    device_type=device_type,
                    heartbeat_interval=heartbeat_interval or settings.DEVICE_HEARTBEAT_INTERVAL_SECONDS,
                    actuator_url=actuator_url,
                    status=Device.STATUS_ACTIVE,
                    last_heartbeat_at=timezone.now(),
                )
        except IntegrityError:
            raise DuplicateDevice()

    logger.info("Device registered", extra={"device_id": normalized, "owner": owner.pk, "location": location})
    return device, True


def _telemetry(telemetry: dict | None, now: datetime) -> dict:
    telemetry = telemetry if isinstance(telemetry, dict) else {}
    info = {key: telemetry.get(key) or 0 for key in TELEMETRY_FIELDS}
    for key, value in telemetry.items():
        if key not in info:
            info[key] = value
    info["lastUpdate"] = now.isoformat()
    return info


def heartbeat(device_id: str, telemetry: dict | None = None, *, now: datetime | None = None) -> Device:
    now = now or timezone.now()
    device = get_device(device_id)
    if device.is_deactivated:
        logger.warning("Heartbeat from deactivated device", extra={"device_id": device.device_id})
        raise Deactivated()

    system_info = _telemetry(telemetry, now)
    Device.objects.filter(pk=device.pk).update(last_heartbeat_at=now, system_info=system_info)
    device.last_heartbeat_at = now
    device.system_info = system_info
    return device


def deactivate(device_id: str, actor, *, now: datetime | None = None) -> Device:
    device = get_device(device_id)
    if device.owner_id != actor.pk and not actor.is_superuser:
        raise PermissionDenied("Only the device owner can deactivate it")

    if not device.is_deactivated:
        device.status = Device.STATUS_DEACTIVATED
        device.deactivated_at = now or timezone.now()
        device.save(update_fields=["status", "deactivated_at"])
        AuditEvent.objects.create(
            event_code="device.deactivated",
            actor=actor,
            subject_key=f"device:{device.device_id}",
            metadata={"location": device.location},
        )
        logger.warning("Device deactivated", extra={"device_id": device.device_id, "actor": actor.pk})
    return device


def set_maintenance(device_id: str, actor, enabled: bool) -> Device:
    """Take a device out of service, or return it, without deactivating it."""
    device = get_device(device_id)
    if device.owner_id != actor.pk and not actor.is_superuser:
        raise PermissionDenied("Only the device owner can change maintenance mode")
    if device.is_deactivated:
        raise Deactivated()

    target = Device.STATUS_MAINTENANCE if enabled else Device.STATUS_ACTIVE
    if device.status != target:
        device.status = target
        device.save(update_fields=["status"])
        AuditEvent.objects.create(
            event_code="device.maintenance",
            actor=actor,
            subject_key=f"device:{device.device_id}",
            metadata={"enabled": enabled},
        )
        logger.info("Device maintenance %s", "enabled" if enabled else "disabled", extra={"device_id": device.device_id})
    return device


def record_decision(device: Device, granted: bool, *, now: datetime | None = None) -> None:
    counter = "granted_count" if granted else "denied_count"
    Device.objects.filter(pk=device.pk).update(
        **{counter: F(counter) + 1},
        last_activity_at=now or timezone.now(),
    )


def devices_for_owner(owner):
    queryset = Device.objects.select_related("facility").order_by("-created_at")
    if owner.is_superuser:
        return queryset
    return queryset.filter(owner=owner)
