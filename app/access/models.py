import uuid

from django.contrib.auth import get_user_model
from django.db import models
from django.utils import timezone

from access.credentials import Method
from access.errors import Reason, Severity
from devices.models import Device
from facilities.models import Facility


User = get_user_model()


class AppendOnlyModel(models.Model):
    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError(f"{type(self).__name__} records are append-only")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError(f"{type(self).__name__} records are append-only")


class AccessAttempt(AppendOnlyModel):
    RESULT_GRANTED = "granted"
    RESULT_DENIED = "denied"
    RESULT_CHOICES = [
        (RESULT_GRANTED, "Granted"),
        (RESULT_DENIED, "Denied"),
    ]

    SOURCE_SERVER = "server"
    SOURCE_DEVICE = "device"
    SOURCE_CLIENT = "client"
    SOURCE_CHOICES = [
        (SOURCE_SERVER, "Server decision"),
        (SOURCE_DEVICE, "Device-mediated decision"),
        (SOURCE_CLIENT, "Client-reported outcome"),
    ]

    event_id = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    subject = models.ForeignKey(User, on_delete=models.SET_NULL, related_name="access_attempts", null=True, blank=True)
    subject_key = models.CharField(max_length=128)
    method = models.CharField(max_length=32, choices=Method.choices)
    facility = models.ForeignKey(Facility, on_delete=models.PROTECT, related_name="access_attempts", null=True, blank=True)
    device = models.ForeignKey(Device, on_delete=models.PROTECT, related_name="access_attempts", null=True, blank=True)
    result = models.CharField(max_length=16, choices=RESULT_CHOICES)
    reason = models.CharField(max_length=32, choices=Reason.choices)
    severity = models.CharField(max_length=16, choices=Severity.choices, default=Severity.NORMAL)
    requires_review = models.BooleanField(default=False)
    source = models.CharField(max_length=16, choices=SOURCE_CHOICES, default=SOURCE_SERVER)
    message = models.CharField(max_length=255, blank=True, default="")
    detail = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["subject_key", "created_at"], name="attempt_subject_time_idx"),
            models.Index(fields=["facility", "created_at"], name="attempt_facility_time_idx"),
            models.Index(fields=["device", "created_at"], name="attempt_device_time_idx"),
            models.Index(fields=["requires_review"], name="attempt_review_idx"),
        ]

    def __str__(self):
        return f"{self.subject_key} {self.method} {self.result} ({self.reason})"

    @property
    def is_granted(self) -> bool:
        return self.result == self.RESULT_GRANTED


class RateLimitState(models.Model):
    subject_key = models.CharField(max_length=128)
    action = models.CharField(max_length=64)
    attempts = models.JSONField(default=list, blank=True)
    blocked_until = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["subject_key", "action"], name="uq_rate_limit_subject_action"),
        ]

    def __str__(self):
        return f"{self.subject_key}:{self.action}"


class AuditEvent(AppendOnlyModel):
    event_code = models.CharField(max_length=128, db_index=True)
    actor = models.ForeignKey(User, on_delete=models.SET_NULL, related_name="audit_events", null=True, blank=True)
    subject_key = models.CharField(max_length=128, blank=True, default="")
    metadata = models.JSONField(default=dict, blank=True)
    occurred_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        ordering = ["-occurred_at", "-id"]

    def __str__(self):
        return f"{self.event_code} {self.subject_key}"


class BiometricEnrollment(models.Model):
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name="biometric_enrollments")
    credential_id = models.CharField(max_length=255, unique=True)
    secret = models.CharField(max_length=255)
    label = models.CharField(max_length=100, blank=True, default="")
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    last_used_at = models.DateTimeField(null=True, blank=True)

    def __str__(self):
        return f"{self.user_id}:{self.label or self.credential_id}"
