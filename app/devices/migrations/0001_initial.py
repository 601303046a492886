from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ("facilities", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Device",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("device_id", models.CharField(max_length=100, unique=True)),
                (
                    "device_type",
                    models.CharField(
                        choices=[
                            ("NodeMCU", "NodeMCU"),
                            ("Arduino", "Arduino"),
                            ("RaspberryPi", "RaspberryPi"),
                            ("Other", "Other"),
                        ],
                        default="NodeMCU",
                        max_length=32,
                    ),
                ),
                ("location", models.CharField(max_length=255)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("active", "Active"),
                            ("maintenance", "Maintenance"),
                            ("deactivated", "Deactivated"),
                        ],
                        default="active",
                        max_length=16,
                    ),
                ),
                ("last_heartbeat_at", models.DateTimeField(blank=True, null=True)),
                ("last_activity_at", models.DateTimeField(blank=True, null=True)),
                ("system_info", models.JSONField(blank=True, default=dict)),
                ("granted_count", models.PositiveIntegerField(default=0)),
                ("denied_count", models.PositiveIntegerField(default=0)),
                (
                    "heartbeat_interval",
                    models.PositiveIntegerField(default=30, help_text="Expected reporting period in seconds"),
                ),
                ("access_timeout_ms", models.PositiveIntegerField(default=5000)),
                ("actuator_url", models.URLField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("deactivated_at", models.DateTimeField(blank=True, null=True)),
                (
                    "owner",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="devices",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "facility",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="devices",
                        to="facilities.facility",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["owner", "status"], name="device_owner_status_idx"),
                    models.Index(fields=["last_heartbeat_at"], name="device_heartbeat_idx"),
                ],
            },
        ),
    ]
