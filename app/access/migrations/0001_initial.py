from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone
import uuid


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ("facilities", "0001_initial"),
        ("devices", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="AccessAttempt",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("event_id", models.UUIDField(default=uuid.uuid4, editable=False, unique=True)),
                ("subject_key", models.CharField(max_length=128)),
                (
                    "method",
                    models.CharField(
                        choices=[
                            ("qr", "QR credential"),
                            ("pin", "Staff PIN"),
                            ("biometric", "Biometric assertion"),
                            ("emergency", "Emergency code"),
                            ("admin-override", "Administrative override"),
                        ],
                        max_length=32,
                    ),
                ),
                ("result", models.CharField(choices=[("granted", "Granted"), ("denied", "Denied")], max_length=16)),
                (
                    "reason",
                    models.CharField(
                        choices=[
                            ("Granted", "Granted"),
                            ("InvalidCredential", "Invalid credential"),
                            ("MembershipExpired", "Membership expired"),
                            ("WrongFacility", "Wrong facility"),
                            ("RateLimited", "Rate limited"),
                            ("DeviceOffline", "Device offline"),
                            ("DeviceTimeout", "Device timeout"),
                            ("UnknownDevice", "Unknown device"),
                            ("Deactivated", "Device deactivated"),
                            ("DuplicateDevice", "Duplicate device"),
                            ("UnsupportedDevice", "Unsupported device"),
                            ("ConfigurationError", "Configuration error"),
                            ("StorageError", "Storage error"),
                        ],
                        max_length=32,
                    ),
                ),
                (
                    "severity",
                    models.CharField(
                        choices=[
                            ("normal", "Normal"),
                            ("elevated", "Elevated"),
                            ("critical", "Critical"),
                            ("review", "Security review"),
                        ],
                        default="normal",
                        max_length=16,
                    ),
                ),
                ("requires_review", models.BooleanField(default=False)),
                (
                    "source",
                    models.CharField(
                        choices=[
                            ("server", "Server decision"),
                            ("device", "Device-mediated decision"),
                            ("client", "Client-reported outcome"),
                        ],
                        default="server",
                        max_length=16,
                    ),
                ),
                ("message", models.CharField(blank=True, default="", max_length=255)),
                ("detail", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                (
                    "device",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="access_attempts",
                        to="devices.device",
                    ),
                ),
                (
                    "facility",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="access_attempts",
                        to="facilities.facility",
                    ),
                ),
                (
                    "subject",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="access_attempts",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "indexes": [
                    models.Index(fields=["subject_key", "created_at"], name="attempt_subject_time_idx"),
                    models.Index(fields=["facility", "created_at"], name="attempt_facility_time_idx"),
                    models.Index(fields=["device", "created_at"], name="attempt_device_time_idx"),
                    models.Index(fields=["requires_review"], name="attempt_review_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="RateLimitState",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("subject_key", models.CharField(max_length=128)),
                ("action", models.CharField(max_length=64)),
                ("attempts", models.JSONField(blank=True, default=list)),
                ("blocked_until", models.DateTimeField(blank=True, null=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(fields=("subject_key", "action"), name="uq_rate_limit_subject_action"),
                ],
            },
        ),
        migrations.CreateModel(
            name="AuditEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("event_code", models.CharField(db_index=True, max_length=128)),
                ("subject_key", models.CharField(blank=True, default="", max_length=128)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("occurred_at", models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                (
                    "actor",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="audit_events",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-occurred_at", "-id"],
            },
        ),
        migrations.CreateModel(
            name="BiometricEnrollment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("credential_id", models.CharField(max_length=255, unique=True)),
                ("secret", models.CharField(max_length=255)),
                ("label", models.CharField(blank=True, default="", max_length=100)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("last_used_at", models.DateTimeField(blank=True, null=True)),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="biometric_enrollments",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
        ),
    ]
