from django.contrib.auth import get_user_model
from django.contrib.auth.hashers import check_password, make_password
from django.core.cache import cache
from django.db import models


User = get_user_model()


class Facility(models.Model):
    name = models.CharField(max_length=255)
    code = models.SlugField(max_length=64, unique=True)
    owner = models.ForeignKey(User, on_delete=models.PROTECT, related_name="facilities")
    emergency_code_hash = models.CharField(max_length=256, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [models.Index(fields=["owner"], name="facility_owner_idx")]

    def __str__(self):
        return f"{self.name} ({self.code})"

    @property
    def display_name(self) -> str:
        return self.name or f"{self.owner.get_username()}'s Gym"

    @property
    def has_emergency_code(self) -> bool:
        return bool(self.emergency_code_hash)

    def set_emergency_code(self, raw_code: str) -> None:
        self.emergency_code_hash = make_password(raw_code)

    def check_emergency_code(self, raw_code: str) -> bool:
        if not self.emergency_code_hash or not raw_code:
            return False
        return check_password(raw_code, self.emergency_code_hash)


class AccessProfile(models.Model):
    ROLE_MEMBER = "member"
    ROLE_TRAINER = "trainer"
    ROLE_OWNER = "owner"
    ROLE_ADMIN = "admin"
    ROLE_CHOICES = [
        (ROLE_MEMBER, "Member"),
        (ROLE_TRAINER, "Trainer"),
        (ROLE_OWNER, "Gym owner"),
        (ROLE_ADMIN, "Administrator"),
    ]
    STAFF_ROLES = (ROLE_TRAINER, ROLE_OWNER)

    STATUS_ACTIVE = "Active"
    STATUS_INACTIVE = "Inactive"
    STATUS_CHOICES = [
        (STATUS_ACTIVE, "Active"),
        (STATUS_INACTIVE, "Inactive"),
    ]

    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name="access_profile")
    facility = models.ForeignKey(
        Facility,
        on_delete=models.SET_NULL,
        related_name="profiles",
        null=True,
        blank=True,
    )
    role = models.CharField(max_length=16, choices=ROLE_CHOICES, default=ROLE_MEMBER)
    membership_end_date = models.DateTimeField(null=True, blank=True)
    membership_status = models.CharField(max_length=16, choices=STATUS_CHOICES, blank=True, default="")
    pin_hash = models.CharField(max_length=256, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["facility", "role"], name="profile_facility_role_idx"),
        ]

    def __str__(self):
        return f"{self.user.get_username()} [{self.role}]"

    @property
    def is_member(self) -> bool:
        return self.role == self.ROLE_MEMBER

    @property
    def is_staff_role(self) -> bool:
        return self.role in self.STAFF_ROLES

    def set_pin(self, raw_pin: str) -> None:
        self.pin_hash = make_password(raw_pin)

    def check_pin(self, raw_pin: str) -> bool:
        if not self.pin_hash or not raw_pin:
            return False
        return check_password(raw_pin, self.pin_hash)

    def save(self, *args, **kwargs):
        super().save(*args, **kwargs)
        # Cached membership state must not outlive a change to its inputs.
        cache.delete(membership_cache_key(self.pk))


def membership_cache_key(profile_id) -> str:
    return f"membership-state:{profile_id}"
