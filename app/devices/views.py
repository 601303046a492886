from __future__ import annotations

import logging

from django.conf import settings
from django.contrib.auth import get_user_model
from django.http import Http404
from rest_framework import status, viewsets
from rest_framework.decorators import (
    action,
    api_view,
    authentication_classes,
    permission_classes,
    throttle_classes,
)
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from access.credentials import Method, MalformedCredential, QR_PAYLOAD_TYPE, build_credential
from access.errors import AccessError
from access.models import AccessAttempt
from access.serializers import AccessAttemptSerializer
from access.services.verifier import AccessVerifier, VerificationContext
from access.throttling import HeartbeatThrottle, client_ip
from facilities.models import AccessProfile, Facility
from .models import Device
from .serializers import (
    DeviceRegistrationSerializer,
    DeviceSerializer,
    DeviceStatusSerializer,
    DeviceValidateSerializer,
    HeartbeatSerializer,
    MaintenanceSerializer,
)
from .services import registry


logger = logging.getLogger(__name__)
User = get_user_model()


def _is_allowed_ip(ip: str) -> bool:
    allowed = getattr(settings, "DEVICE_ALLOWED_IPS", [])
    if not allowed:
        return True
    return ip in allowed


def _is_allowed_token(request) -> bool:
    expected = getattr(settings, "DEVICE_API_TOKEN", "")
    if not expected:
        return True
    provided = request.headers.get("X-DEVICE-TOKEN", "")
    return provided == expected


def _reject_unknown_source(request) -> Response | None:
    ip = client_ip(request)
    if not _is_allowed_ip(ip) or not _is_allowed_token(request):
        logger.warning("Device request from unauthorized source", extra={"client_ip": ip})
        return Response({"detail": "Unauthorized source"}, status=status.HTTP_403_FORBIDDEN)
    return None


def _error_response(exc: AccessError) -> Response:
    return Response(exc.as_payload(), status=exc.http_status)


def _can_operate_devices(user) -> bool:
    if user.is_superuser:
        return True
    profile = AccessProfile.objects.filter(user=user).first()
    return bool(profile and profile.role in (AccessProfile.ROLE_OWNER, AccessProfile.ROLE_ADMIN))


class DeviceViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Device.objects.none()
    serializer_class = DeviceSerializer
    lookup_field = "device_id"

    def get_queryset(self):
        return registry.devices_for_owner(self.request.user)

    def get_object(self):
        device = self.get_queryset().filter(
            device_id=registry.normalize_device_id(self.kwargs[self.lookup_field])
        ).first()
        if device is None:
            raise Http404("Device not found")
        return device

    @action(detail=True, methods=["get"])
    def logs(self, request, device_id=None):
        device = self.get_object()
        attempts = AccessAttempt.objects.filter(device=device).select_related("subject").order_by("-created_at", "-id")
        page = self.paginate_queryset(attempts)
        if page is not None:
            serializer = AccessAttemptSerializer(page, many=True)
            return self.get_paginated_response(serializer.data)
        return Response(AccessAttemptSerializer(attempts, many=True).data)

    @action(detail=True, methods=["get"])
    def stats(self, request, device_id=None):
        device = self.get_object()
        recent = AccessAttempt.objects.filter(device=device).order_by("-created_at", "-id")[:10]
        return Response(
            {
                "device": DeviceStatusSerializer(device).data,
                "totalAccessAttempts": device.granted_count + device.denied_count,
                "successfulAccess": device.granted_count,
                "deniedAccess": device.denied_count,
                "recentAccess": AccessAttemptSerializer(recent, many=True).data,
            }
        )

    @action(detail=True, methods=["patch"])
    def deactivate(self, request, device_id=None):
        device = self.get_object()
        device = registry.deactivate(device.device_id, request.user)
        return Response(
            {"status": "success", "message": "Device deactivated successfully", "data": {"device": DeviceSerializer(device).data}}
        )

    @action(detail=True, methods=["patch"])
    def maintenance(self, request, device_id=None):
        serializer = MaintenanceSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        device = self.get_object()
        try:
            device = registry.set_maintenance(device.device_id, request.user, serializer.validated_data["enabled"])
        except AccessError as exc:
            return _error_response(exc)
        return Response({"status": "success", "data": {"device": DeviceSerializer(device).data}})


@api_view(["POST"])
def register_device(request):
    serializer = DeviceRegistrationSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data

    if not _can_operate_devices(request.user):
        return Response({"detail": "Only gym owners can register devices"}, status=status.HTTP_403_FORBIDDEN)

    owner = request.user
    owner_id = data.get("ownerId")
    if owner_id and owner_id != request.user.pk:
        if not request.user.is_superuser:
            return Response({"detail": "You can only register devices you own"}, status=status.HTTP_403_FORBIDDEN)
        owner = User.objects.filter(pk=owner_id).first()
        if owner is None:
            return Response({"detail": "Unknown owner"}, status=status.HTTP_400_BAD_REQUEST)

    try:
        device, created = registry.register(
            data["deviceId"],
            owner,
            data["location"],
            facility=Facility.objects.filter(owner=owner).order_by("id").first(),
            device_type=data["deviceType"],
            heartbeat_interval=data.get("heartbeatInterval"),
            actuator_url=data.get("actuatorUrl", ""),
        )
    except AccessError as exc:
        return _error_response(exc)

    return Response(
        {
            "status": "success",
            "message": "Device registered successfully" if created else "Device already registered",
            "data": {"device": DeviceSerializer(device).data},
        },
        status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
    )


@api_view(["POST"])
@authentication_classes([])
@permission_classes([AllowAny])
@throttle_classes([HeartbeatThrottle])
def device_heartbeat(request):
    rejected = _reject_unknown_source(request)
    if rejected is not None:
        return rejected

    serializer = HeartbeatSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    try:
        device = registry.heartbeat(serializer.validated_data["deviceId"], serializer.validated_data["telemetry"])
    except AccessError as exc:
        return _error_response(exc)

    return Response(
        {
            "status": "success",
            "message": "Heartbeat updated",
            "ack": {
                "deviceId": device.device_id,
                "receivedAt": device.last_heartbeat_at.isoformat(),
                "nextHeartbeatIn": device.heartbeat_interval,
            },
        }
    )


def _subject_for(subject_id: str):
    if not subject_id.isdigit():
        return None
    return User.objects.filter(pk=int(subject_id)).first()


@api_view(["POST"])
@authentication_classes([])
@permission_classes([AllowAny])
def device_validate(request):
    rejected = _reject_unknown_source(request)
    if rejected is not None:
        return rejected

    serializer = DeviceValidateSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data

    credential_payload = data.get("credentialPayload") or {
        "subjectId": data["memberId"],
        "method": Method.QR,
        "payload": {"type": QR_PAYLOAD_TYPE, "gymOwnerId": data["gymOwnerId"]},
    }
    subject_id = str(credential_payload.get("subjectId") or credential_payload.get("memberId") or "").strip()

    try:
        credential = build_credential(credential_payload.get("method") or Method.QR, credential_payload.get("payload"))
    except MalformedCredential as exc:
        return Response({"status": "error", "message": str(exc), "nodeMcuResponse": "INACTIVE"}, status=status.HTTP_400_BAD_REQUEST)

    decision = AccessVerifier().verify(
        credential,
        VerificationContext(
            subject=_subject_for(subject_id),
            claimed_subject_id=subject_id,
            device_id=data["deviceId"],
            source=AccessAttempt.SOURCE_DEVICE,
        ),
    )
    return Response(decision.device_payload(), status=status.HTTP_200_OK)
