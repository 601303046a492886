from __future__ import annotations

import requests
from django.conf import settings
from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from devices.client import DeviceActuatorClient
from devices.models import Device
from devices.services.liveness import is_healthy, is_online, seconds_since_heartbeat


class Command(BaseCommand):
    help = "Report online/offline state for registered entry devices"

    def add_arguments(self, parser):
        parser.add_argument("--owner", help="Only devices of this owner (username)")
        parser.add_argument("--device", help="Only this device id")
        parser.add_argument("--ping", action="store_true", help="Also ping devices that expose an actuator URL")
        parser.add_argument(
            "--fail-on-offline",
            action="store_true",
            help="Exit with status 2 when an active device is offline",
        )

    def handle(self, *args, **options):
        owner = (options.get("owner") or "").strip()
        device_id = (options.get("device") or "").strip().upper()

        devices = Device.objects.select_related("owner").exclude(status=Device.STATUS_DEACTIVATED).order_by("device_id")
        if owner:
            devices = devices.filter(owner__username=owner)
        if device_id:
            devices = devices.filter(device_id=device_id)

        devices = list(devices)
        if not devices:
            raise CommandError("No registered devices match the filters")

        now = timezone.now()
        offline = []
        for device in devices:
            online = is_online(device, now=now)
            if not online and device.status == Device.STATUS_ACTIVE:
                offline.append(device.device_id)

            last_seen = seconds_since_heartbeat(device, now=now)
            line = (
                f"{device.device_id} location={device.location} status={device.status} "
                f"online={'yes' if online else 'no'} healthy={'yes' if is_healthy(device, now=now) else 'no'} "
                f"last_heartbeat={'never' if last_seen is None else f'{last_seen}s ago'}"
            )
            if options["ping"] and device.actuator_url:
                line += f" ping={self._ping(device)}"

            self.stdout.write(self.style.SUCCESS(line) if online else self.style.WARNING(line))

        if offline and options["fail_on_offline"]:
            raise CommandError(f"Offline devices: {', '.join(offline)}", returncode=2)

        self.stdout.write(f"{len(devices) - len(offline)}/{len(devices)} devices online")

    def _ping(self, device: Device) -> str:
        client = DeviceActuatorClient(
            device.actuator_url,
            token=settings.DEVICE_API_TOKEN,
            timeout=settings.DEVICE_ACTUATION_TIMEOUT_SECONDS,
        )
        try:
            client.ping()
        except requests.Timeout:
            return "timeout"
        except requests.RequestException as exc:
            return f"error ({exc.__class__.__name__})"
        return "ok"
