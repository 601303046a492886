from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import models
from facilities.models import Facility


User = get_user_model()


DEVICE_TYPE_CHOICES = (
    ('NodeMCU', 'NodeMCU'),
    ('Arduino', 'Arduino'),
    ('RaspberryPi', 'RaspberryPi'),
    ('Other', 'Other'),
)


class Device(models.Model):
    STATUS_ACTIVE = 'active'
    STATUS_MAINTENANCE = 'maintenance'
    STATUS_DEACTIVATED = 'deactivated'
    STATUS_CHOICES = (
        (STATUS_ACTIVE, 'Active'),
        (STATUS_MAINTENANCE, 'Maintenance'),
        (STATUS_DEACTIVATED, 'Deactivated'),
    )

    owner = models.ForeignKey(User, on_delete=models.PROTECT, related_name='devices')
    facility = models.ForeignKey(Facility, on_delete=models.PROTECT, related_name='devices', null=True, blank=True)

    device_id = models.CharField(max_length=100, unique=True)
    device_type = models.CharField(max_length=32, choices=DEVICE_TYPE_CHOICES, default='NodeMCU')
    location = models.CharField(max_length=255)
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_ACTIVE)

    last_heartbeat_at = models.DateTimeField(null=True, blank=True)
    last_activity_at = models.DateTimeField(null=True, blank=True)
    system_info = models.JSONField(default=dict, blank=True)

    granted_count = models.PositiveIntegerField(default=0)
    denied_count = models.PositiveIntegerField(default=0)

    heartbeat_interval = models.PositiveIntegerField(default=30, help_text='Expected reporting period in seconds')
    access_timeout_ms = models.PositiveIntegerField(default=5000)
    actuator_url = models.URLField(blank=True, default='')

    created_at = models.DateTimeField(auto_now_add=True)
    deactivated_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        indexes = [
            models.Index(fields=['owner', 'status'], name='device_owner_status_idx'),
            models.Index(fields=['last_heartbeat_at'], name='device_heartbeat_idx'),
        ]

    def __str__(self):
        return f'{self.device_id} ({self.location})'

    def save(self, *args, **kwargs):
        self.device_id = (self.device_id or '').strip().upper()
        super().save(*args, **kwargs)

    @property
    def is_deactivated(self) -> bool:
        return self.status == self.STATUS_DEACTIVATED

    @property
    def access_counters(self) -> dict:
        return {'granted': self.granted_count, 'denied': self.denied_count}

    def online_threshold_seconds(self) -> int:
        interval = self.heartbeat_interval or settings.DEVICE_HEARTBEAT_INTERVAL_SECONDS
        return interval * settings.DEVICE_ONLINE_THRESHOLD_MULTIPLIER
