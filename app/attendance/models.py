from django.contrib.auth import get_user_model
from django.db import models
from django.utils import timezone

from access.models import AccessAttempt, AppendOnlyModel
from devices.models import Device
from facilities.models import Facility


User = get_user_model()


class AttendanceRecord(AppendOnlyModel):
    member = models.ForeignKey(User, on_delete=models.PROTECT, related_name="attendance_records")
    facility = models.ForeignKey(Facility, on_delete=models.PROTECT, related_name="attendance_records")
    device = models.ForeignKey(Device, on_delete=models.PROTECT, related_name="attendance_records", null=True, blank=True)
    attempt = models.OneToOneField(
        AccessAttempt,
        on_delete=models.PROTECT,
        related_name="attendance_record",
        null=True,
        blank=True,
    )
    timestamp = models.DateTimeField(default=timezone.now)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-timestamp", "-id"]
        indexes = [
            models.Index(fields=["member", "timestamp"], name="attendance_member_time_idx"),
            models.Index(fields=["facility", "timestamp"], name="attendance_facility_time_idx"),
        ]

    def __str__(self):
        return f"{self.member_id}@{self.facility_id} {self.timestamp.isoformat()}"
