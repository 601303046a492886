from __future__ import annotations

import logging

from django.db import IntegrityError
from rest_framework import status
from rest_framework.decorators import api_view, throttle_classes
from rest_framework.response import Response

from access.credentials import Method, MalformedCredential, build_credential
from access.errors import Reason, message_for, severity_for
from access.models import AccessAttempt, AuditEvent, BiometricEnrollment
from access.serializers import (
    AccessAttemptSerializer,
    BiometricEnrollmentSerializer,
    LogAttemptSerializer,
    MarkSerializer,
    RateLimitResetSerializer,
    StaffBiometricSerializer,
    StaffEmergencySerializer,
    StaffPinSerializer,
    VerifySerializer,
)
from access.services.rate_limit import RateLimiter
from access.services.verifier import AccessVerifier, Decision, VerificationContext
from access.throttling import RateLimitResetThrottle, SubjectActionThrottle
from attendance.services import ledger
from facilities.membership import cached_membership_state
from facilities.models import AccessProfile, Facility
from facilities.serializers import AccessProfileSerializer


logger = logging.getLogger(__name__)


class LogAttemptThrottle(SubjectActionThrottle):
    action = "log-attempt"


def _is_admin_request(request) -> bool:
    user = getattr(request, "user", None)
    if not (user and user.is_authenticated):
        return False
    if user.is_superuser:
        return True
    return AccessProfile.objects.filter(user=user, role=AccessProfile.ROLE_ADMIN).exists()


def _resolve_facility(value) -> tuple[Facility | None, bool]:
    """Return (facility, ok); ok is False when a value was given but matched nothing."""
    value = str(value or "").strip()
    if not value:
        return None, True
    queryset = Facility.objects.select_related("owner")
    facility = queryset.filter(pk=int(value)).first() if value.isdigit() else queryset.filter(code=value).first()
    return facility, facility is not None


def _decision_response(decision: Decision) -> Response:
    if decision.granted:
        http_status = status.HTTP_200_OK
    elif decision.reason == Reason.RATE_LIMITED:
        http_status = status.HTTP_429_TOO_MANY_REQUESTS
    elif decision.is_system_error:
        http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        http_status = status.HTTP_200_OK

    response = Response(decision.as_payload(), status=http_status)
    if decision.retry_after:
        response["Retry-After"] = str(decision.retry_after)
    return response


def _verify(request, method: str, payload, facility_value="", device_id: str = "") -> Response:
    facility, ok = _resolve_facility(facility_value)
    if not ok:
        return Response({"status": "error", "message": "Unknown facility"}, status=status.HTTP_400_BAD_REQUEST)

    try:
        credential = build_credential(method, payload)
    except MalformedCredential as exc:
        return Response({"status": "error", "message": str(exc)}, status=status.HTTP_400_BAD_REQUEST)

    decision = AccessVerifier().verify(
        credential,
        VerificationContext(
            subject=request.user,
            claimed_subject_id=str(request.user.pk),
            facility=facility,
            device_id=device_id or "",
        ),
    )
    return _decision_response(decision)


@api_view(["POST"])
def verify_access(request):
    serializer = VerifySerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data
    return _verify(
        request,
        data["credentialType"],
        data.get("payload"),
        facility_value=data.get("facilityId"),
        device_id=data.get("deviceId", ""),
    )


@api_view(["POST"])
def staff_pin_verify(request):
    serializer = StaffPinSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data
    return _verify(request, Method.PIN, data["pinCode"], facility_value=data.get("facilityId"))


@api_view(["POST"])
def staff_biometric_verify(request):
    serializer = StaffBiometricSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data
    return _verify(request, Method.BIOMETRIC, data.get("assertion"), facility_value=data.get("facilityId"))


@api_view(["POST"])
def staff_emergency_verify(request):
    serializer = StaffEmergencySerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data
    return _verify(
        request,
        Method.EMERGENCY,
        {"code": data["emergencyCode"], "reason": data.get("reason", "")},
        facility_value=data.get("facilityId"),
    )


@api_view(["POST"])
def mark_attendance(request):
    serializer = MarkSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    attempt = AccessAttempt.objects.filter(event_id=serializer.validated_data["eventId"], subject=request.user).first()
    if attempt is None:
        return Response({"status": "error", "message": "Unknown verification event"}, status=status.HTTP_404_NOT_FOUND)

    try:
        record, created = ledger.record_for_attempt(attempt)
    except ledger.NotAttendanceEvent as exc:
        return Response({"status": "error", "message": str(exc)}, status=status.HTTP_400_BAD_REQUEST)

    return Response(
        {
            "status": "success",
            "message": "Attendance marked" if created else "Attendance already marked",
            "created": created,
            "attendance": {
                "id": record.pk,
                "facility": record.facility_id,
                "timestamp": record.timestamp.isoformat(),
            },
        },
        status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
    )


@api_view(["POST"])
@throttle_classes([LogAttemptThrottle])
def log_attempt(request):
    serializer = LogAttemptSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data

    facility, ok = _resolve_facility(data.get("facilityId"))
    if not ok:
        return Response({"status": "error", "message": "Unknown facility"}, status=status.HTTP_400_BAD_REQUEST)

    reason = Reason.GRANTED if data["success"] else data.get("reason") or Reason.INVALID_CREDENTIAL
    attempt = AccessAttempt.objects.create(
        subject=request.user,
        subject_key=f"user:{request.user.pk}",
        method=data["method"],
        facility=facility,
        result=AccessAttempt.RESULT_GRANTED if data["success"] else AccessAttempt.RESULT_DENIED,
        reason=reason,
        severity=severity_for(reason),
        source=AccessAttempt.SOURCE_CLIENT,
        message=(data.get("error") or message_for(reason))[:255],
    )
    logger.info(
        "Client-reported access attempt",
        extra={"subject_key": attempt.subject_key, "method": attempt.method, "reason": attempt.reason},
    )
    return Response({"status": "success", "eventId": str(attempt.event_id)}, status=status.HTTP_201_CREATED)


@api_view(["GET"])
def membership_status(request):
    profile = AccessProfile.objects.select_related("facility").filter(user=request.user).first()
    if profile is None:
        return Response({"detail": "No access profile"}, status=status.HTTP_404_NOT_FOUND)

    state = cached_membership_state(profile)
    return Response(
        {
            "profile": AccessProfileSerializer(profile).data,
            "status": state.status,
            "daysRemaining": state.days_remaining,
            "endDate": state.end_date.isoformat() if state.end_date else None,
        }
    )


@api_view(["GET"])
def review_queue(request):
    if not _is_admin_request(request):
        return Response({"detail": "Administrators only"}, status=status.HTTP_403_FORBIDDEN)

    attempts = AccessAttempt.objects.filter(requires_review=True).select_related("subject", "device")
    facility_value = request.query_params.get("facility")
    if facility_value:
        facility, ok = _resolve_facility(facility_value)
        if not ok:
            return Response({"detail": "Unknown facility"}, status=status.HTTP_400_BAD_REQUEST)
        attempts = attempts.filter(facility=facility)

    attempts = attempts.order_by("-created_at", "-id")[:200]
    return Response({"count": len(attempts), "results": AccessAttemptSerializer(attempts, many=True).data})


@api_view(["POST"])
@throttle_classes([RateLimitResetThrottle])
def reset_rate_limit(request):
    if not _is_admin_request(request):
        return Response({"detail": "Administrators only"}, status=status.HTTP_403_FORBIDDEN)

    serializer = RateLimitResetSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data

    cleared = RateLimiter().reset(data["subjectKey"], data.get("action") or None)
    AuditEvent.objects.create(
        event_code="rate_limit.reset",
        actor=request.user,
        subject_key=data["subjectKey"],
        metadata={"action": data.get("action") or "*", "reason": data["reason"], "cleared": cleared},
    )
    return Response({"status": "success", "cleared": cleared})


@api_view(["GET", "POST"])
def biometric_enrollments(request):
    profile = AccessProfile.objects.filter(user=request.user).first()
    if profile is None or not profile.is_staff_role:
        return Response({"detail": "Only trainers and gym owners can enroll biometrics"}, status=status.HTTP_403_FORBIDDEN)

    if request.method == "GET":
        enrollments = BiometricEnrollment.objects.filter(user=request.user).order_by("-created_at")
        return Response(BiometricEnrollmentSerializer(enrollments, many=True).data)

    serializer = BiometricEnrollmentSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    try:
        enrollment = serializer.save(user=request.user)
    except IntegrityError:
        return Response({"detail": "Credential already enrolled"}, status=status.HTTP_409_CONFLICT)

    AuditEvent.objects.create(
        event_code="biometric.enrolled",
        actor=request.user,
        subject_key=f"user:{request.user.pk}",
        metadata={"credential_id": enrollment.credential_id, "label": enrollment.label},
    )
    return Response(BiometricEnrollmentSerializer(enrollment).data, status=status.HTTP_201_CREATED)
