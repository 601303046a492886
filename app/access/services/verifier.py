"""Grant/deny decisions for every credential method.

``AccessVerifier.verify`` is the single entry point. Each step may
short-circuit to a denial; whatever the outcome, an AccessAttempt is written
before the decision is returned.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime

import requests
from django.conf import settings
from django.db import DatabaseError, transaction
from django.utils import timezone

from access.credentials import (
    EMERGENCY_CODE_MIN_LENGTH,
    AdminOverrideCredential,
    BiometricCredential,
    Credential,
    EmergencyCredential,
    MalformedCredential,
    Method,
    PinCredential,
    QRCredential,
    decode_qr_payload,
)
from access.errors import (
    SEVERITY_LOG_LEVELS,
    AccessError,
    ConfigurationError,
    CredentialError,
    Deactivated,
    RateLimited,
    Reason,
    Severity,
    UnknownDevice,
    message_for,
    severity_for,
)
from access.models import AccessAttempt, BiometricEnrollment
from access.services.rate_limit import RateLimiter
from attendance.services import ledger
from devices.client import DeviceActuatorClient
from devices.models import Device
from devices.services import registry
from devices.services.liveness import is_online
from facilities.membership import MembershipState, resolve_profile
from facilities.models import AccessProfile, Facility


logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("access.audit")


@dataclass
class VerificationContext:
    subject: object | None
    claimed_subject_id: str = ""
    facility: Facility | None = None
    device_id: str = ""
    source: str = AccessAttempt.SOURCE_SERVER
    now: datetime | None = None

    @property
    def subject_key(self) -> str:
        if self.subject is not None:
            return f"user:{self.subject.pk}"
        return f"claimed:{self.claimed_subject_id or 'anonymous'}"


@dataclass
class Decision:
    granted: bool
    reason: str
    message: str
    method: str
    attempt: AccessAttempt | None = None
    facility: Facility | None = None
    device: Device | None = None
    profile: AccessProfile | None = None
    membership: MembershipState | None = None
    attendance_created: bool = False
    requires_review: bool = False
    retry_after: int = 0
    hint: str = ""
    extra: dict = field(default_factory=dict)

    @property
    def is_system_error(self) -> bool:
        return self.reason in (Reason.CONFIGURATION_ERROR, Reason.STORAGE_ERROR)

    def member_payload(self) -> dict | None:
        if self.profile is None:
            return None
        user = self.profile.user
        payload = {
            "id": user.pk,
            "name": user.get_full_name() or user.get_username(),
            "role": self.profile.role,
        }
        if self.membership is not None:
            payload["membershipStatus"] = self.membership.status
            payload["daysRemaining"] = self.membership.days_remaining
        return payload

    def gym_payload(self) -> dict | None:
        if self.facility is None:
            return None
        return {
            "id": self.facility.pk,
            "ownerId": str(self.facility.owner_id),
            "name": self.facility.display_name,
        }

    def as_payload(self) -> dict:
        payload = {
            "status": "success" if self.granted else "error",
            "result": AccessAttempt.RESULT_GRANTED if self.granted else AccessAttempt.RESULT_DENIED,
            "reason": str(self.reason),
            "message": self.message,
            "method": str(self.method),
            "eventId": str(self.attempt.event_id) if self.attempt else None,
            "requiresReview": self.requires_review,
        }
        member = self.member_payload()
        if member is not None:
            payload["member"] = member
        gym = self.gym_payload()
        if gym is not None:
            payload["gym"] = gym
        if self.retry_after:
            payload["retryAfter"] = self.retry_after
        if self.hint:
            payload["hint"] = self.hint
        return payload

    def device_payload(self) -> dict:
        device_id = self.device.device_id if self.device else ""
        if self.granted:
            device_response = {
                "deviceId": device_id,
                "action": "GRANT_ACCESS",
                "duration": self.device.access_timeout_ms if self.device else settings.DEVICE_GRANT_DURATION_MS,
                "welcomeMessage": self.message,
            }
        else:
            device_response = {"deviceId": device_id, "action": "DENY_ACCESS", "reason": str(self.reason)}

        payload = self.as_payload()
        payload["nodeMcuResponse"] = "ACTIVE" if self.granted else "INACTIVE"
        payload["deviceResponse"] = device_response
        return payload


class AccessVerifier:
    def __init__(self, rate_limiter: RateLimiter | None = None):
        self.rate_limiter = rate_limiter or RateLimiter()

    def verify(self, credential: Credential, context: VerificationContext) -> Decision:
        now = context.now or timezone.now()
        decision = Decision(granted=False, reason=Reason.INVALID_CREDENTIAL, message="", method=credential.method)
        try:
            if context.device_id:
                # Resolved up front so every denial is attributed to the device.
                decision.device = Device.objects.select_related("facility").filter(
                    device_id=registry.normalize_device_id(context.device_id)
                ).first()
            self._check_rate_limit(context, credential.method, now)
            self._validate_credential(credential, context, decision, now)
            if context.device_id:
                self._check_device(context, decision, now)
                self._actuate(decision)
        except AccessError as exc:
            decision.reason = exc.reason
            decision.message = exc.detail
            decision.hint = exc.hint
            if isinstance(exc, RateLimited):
                decision.retry_after = exc.retry_after
            return self._finish(decision, context, now)
        except DatabaseError:
            logger.exception("Storage failure during verification", extra={"subject_key": context.subject_key})
            decision.reason = Reason.STORAGE_ERROR
            decision.message = message_for(Reason.STORAGE_ERROR)
            return self._finish(decision, context, now)
        except Exception:
            logger.exception("Unexpected failure during verification", extra={"subject_key": context.subject_key})
            decision.reason = Reason.CONFIGURATION_ERROR
            decision.message = message_for(Reason.CONFIGURATION_ERROR)
            return self._finish(decision, context, now)

        decision.granted = True
        decision.reason = Reason.GRANTED
        decision.message = decision.message or message_for(Reason.GRANTED)
        return self._finish(decision, context, now)

    # Steps

    def _check_rate_limit(self, context: VerificationContext, method: str, now: datetime) -> None:
        result = self.rate_limiter.check_and_record(context.subject_key, method, now=now)
        if not result.allowed:
            raise RateLimited(retry_after=result.retry_after(now))

    def _validate_credential(self, credential, context, decision: Decision, now: datetime) -> None:
        if isinstance(credential, QRCredential):
            self._verify_qr(credential, context, decision, now)
        elif isinstance(credential, PinCredential):
            self._verify_pin(credential, context, decision)
        elif isinstance(credential, BiometricCredential):
            self._verify_biometric(credential, context, decision, now)
        elif isinstance(credential, EmergencyCredential):
            self._verify_emergency(credential, context, decision)
        elif isinstance(credential, AdminOverrideCredential):
            self._verify_admin_override(context, decision)
        else:
            raise CredentialError(detail="Unsupported credential type")

    def _profile(self, context: VerificationContext) -> AccessProfile:
        if context.subject is None:
            raise CredentialError(detail="Unknown subject")
        profile = AccessProfile.objects.select_related("facility", "user").filter(user=context.subject).first()
        if profile is None:
            raise CredentialError(detail="Subject has no access profile")
        return profile

    def _staff_facility(self, profile: AccessProfile, context: VerificationContext) -> Facility:
        if profile.role == AccessProfile.ROLE_OWNER:
            facility = profile.facility or Facility.objects.filter(owner=profile.user).order_by("id").first()
        else:
            facility = profile.facility
        if facility is None:
            raise CredentialError(detail="Trainer is not assigned to any gym")
        if context.facility is not None and context.facility.pk != facility.pk:
            raise CredentialError(Reason.WRONG_FACILITY, "You are not staff at this gym")
        return facility

    def _require_staff(self, profile: AccessProfile) -> None:
        if not profile.is_staff_role:
            raise CredentialError(detail="Only trainers and gym owners can use staff entry")

    def _verify_qr(self, credential: QRCredential, context, decision: Decision, now: datetime) -> None:
        try:
            payload = decode_qr_payload(credential.payload)
        except MalformedCredential as exc:
            raise CredentialError(detail=str(exc))

        facility = None
        if payload.gym_owner_id.isdigit():
            facility = Facility.objects.select_related("owner").filter(owner_id=payload.gym_owner_id).order_by("id").first()
        if facility is None:
            raise CredentialError(detail="Invalid gym owner or gym not found")
        decision.facility = facility
        if context.facility is not None and context.facility.pk != facility.pk:
            raise CredentialError(Reason.WRONG_FACILITY, "This code belongs to another gym")

        profile = self._profile(context)
        decision.profile = profile

        if profile.is_member:
            if profile.facility_id != facility.pk:
                raise CredentialError(Reason.WRONG_FACILITY)
            decision.membership = resolve_profile(profile, now=now)
            if not decision.membership.is_active:
                raise CredentialError(Reason.MEMBERSHIP_EXPIRED)
        elif profile.is_staff_role:
            self._staff_facility(profile, VerificationContext(subject=context.subject, facility=facility))
        elif profile.role != AccessProfile.ROLE_ADMIN:
            raise CredentialError()

        decision.message = f"Welcome to {facility.display_name}!"

    def _verify_pin(self, credential: PinCredential, context, decision: Decision) -> None:
        profile = self._profile(context)
        decision.profile = profile
        self._require_staff(profile)
        decision.facility = self._staff_facility(profile, context)

        if not credential.is_well_formed or not profile.check_pin(credential.code):
            raise CredentialError(detail="Invalid PIN code")
        decision.message = f"PIN access granted. Welcome {profile.user.get_username()}"

    def _verify_biometric(self, credential: BiometricCredential, context, decision: Decision, now: datetime) -> None:
        if not credential.is_supported:
            raise CredentialError(Reason.UNSUPPORTED_DEVICE)

        profile = self._profile(context)
        decision.profile = profile
        self._require_staff(profile)
        decision.facility = self._staff_facility(profile, context)

        assertion = credential.assertion
        credential_id = str(assertion.get("credentialId") or "")
        challenge = str(assertion.get("challenge") or "")
        signature = str(assertion.get("signature") or "")
        enrollment = BiometricEnrollment.objects.filter(
            user=profile.user,
            credential_id=credential_id,
            is_active=True,
        ).first()
        if enrollment is None or not challenge or not signature:
            raise CredentialError(detail="Biometric verification failed")

        expected = hmac.new(enrollment.secret.encode("utf-8"), challenge.encode("utf-8"), hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, signature):
            raise CredentialError(detail="Biometric verification failed")

        BiometricEnrollment.objects.filter(pk=enrollment.pk).update(last_used_at=now)
        decision.message = f"Biometric access granted. Welcome {profile.user.get_username()}"

    def _verify_emergency(self, credential: EmergencyCredential, context, decision: Decision) -> None:
        profile = self._profile(context)
        decision.profile = profile
        facility = context.facility or profile.facility
        if facility is None and profile.role == AccessProfile.ROLE_OWNER:
            facility = Facility.objects.filter(owner=profile.user).order_by("id").first()
        if facility is None:
            raise CredentialError(detail="No gym selected for emergency access")
        decision.facility = facility

        if not facility.has_emergency_code:
            logger.critical("Emergency access attempted without a configured code", extra={"facility": facility.code})
            raise ConfigurationError()
        if len(credential.code) < EMERGENCY_CODE_MIN_LENGTH or not facility.check_emergency_code(credential.code):
            raise CredentialError(detail="Invalid emergency code")

        decision.requires_review = True
        decision.extra["emergency_reason"] = credential.reason
        decision.message = "Emergency access granted. This entry has been logged for security review."

    def _verify_admin_override(self, context, decision: Decision) -> None:
        profile = self._profile(context)
        decision.profile = profile
        if profile.role != AccessProfile.ROLE_ADMIN and not profile.user.is_superuser:
            raise CredentialError(detail="Administrative override is not permitted")
        if context.facility is None:
            raise CredentialError(detail="No gym selected for override")
        decision.facility = context.facility
        decision.message = f"Administrative override granted for {context.facility.display_name}"

    def _check_device(self, context: VerificationContext, decision: Decision, now: datetime) -> None:
        device = decision.device
        if device is None:
            raise UnknownDevice()
        if device.is_deactivated:
            raise Deactivated()
        if decision.facility is not None and device.facility_id not in (None, decision.facility.pk):
            raise CredentialError(Reason.WRONG_FACILITY, "Device not authorized for this gym")
        if device.status != Device.STATUS_ACTIVE or not is_online(device, now=now):
            raise CredentialError(Reason.DEVICE_OFFLINE)

    def _actuate(self, decision: Decision) -> None:
        device = decision.device
        if device is None or not device.actuator_url:
            return
        client = DeviceActuatorClient(
            device.actuator_url,
            token=settings.DEVICE_API_TOKEN,
            timeout=settings.DEVICE_ACTUATION_TIMEOUT_SECONDS,
        )
        try:
            client.open_gate(device.device_id, device.access_timeout_ms, message=decision.message)
        except requests.Timeout:
            logger.warning("Gate actuation timed out", extra={"device_id": device.device_id})
            raise CredentialError(Reason.DEVICE_TIMEOUT)
        except requests.RequestException:
            logger.warning("Gate actuation failed", extra={"device_id": device.device_id}, exc_info=True)
            raise CredentialError(Reason.DEVICE_OFFLINE)

    # Outcome

    @staticmethod
    def _records_attendance(decision: Decision) -> bool:
        # Only member credentials produce attendance; staff and override entries do not.
        return decision.method == Method.QR and decision.profile is not None and decision.profile.is_member

    def _finish(self, decision: Decision, context: VerificationContext, now: datetime) -> Decision:
        severity = Severity.REVIEW if decision.granted and decision.requires_review else severity_for(decision.reason)
        if not decision.granted:
            decision.requires_review = False

        try:
            with transaction.atomic():
                decision.attempt = AccessAttempt.objects.create(
                    subject=context.subject,
                    subject_key=context.subject_key,
                    method=decision.method,
                    facility=decision.facility,
                    device=decision.device,
                    result=AccessAttempt.RESULT_GRANTED if decision.granted else AccessAttempt.RESULT_DENIED,
                    reason=decision.reason,
                    severity=severity,
                    requires_review=decision.requires_review,
                    source=AccessAttempt.SOURCE_DEVICE if decision.device else context.source,
                    message=decision.message[:255],
                    detail=decision.extra,
                    created_at=now,
                )
                if decision.device is not None:
                    registry.record_decision(decision.device, decision.granted, now=now)
                if decision.granted and self._records_attendance(decision):
                    _, decision.attendance_created = ledger.record_for_attempt(decision.attempt)
        except DatabaseError:
            logger.exception("Unable to write access attempt", extra={"subject_key": context.subject_key})
            decision.granted = False
            decision.attempt = None
            decision.reason = Reason.STORAGE_ERROR
            decision.message = message_for(Reason.STORAGE_ERROR)
            decision.requires_review = False
            severity = Severity.CRITICAL

        audit_logger.log(
            SEVERITY_LOG_LEVELS.get(severity, logging.INFO),
            "Access %s",
            "granted" if decision.granted else "denied",
            extra={
                "subject_key": context.subject_key,
                "method": str(decision.method),
                "reason": str(decision.reason),
                "facility": decision.facility.pk if decision.facility else None,
                "device_id": decision.device.device_id if decision.device else None,
                "requires_review": decision.requires_review,
            },
        )
        return decision
