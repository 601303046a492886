from rest_framework import serializers

from .credentials import Method
from .errors import Reason
from .models import AccessAttempt, BiometricEnrollment


class AccessAttemptSerializer(serializers.ModelSerializer):
    subject_name = serializers.SerializerMethodField()
    device_id = serializers.CharField(source='device.device_id', read_only=True, default=None)

    class Meta:
        model = AccessAttempt
        fields = [
            'event_id',
            'subject',
            'subject_name',
            'subject_key',
            'method',
            'facility',
            'device_id',
            'result',
            'reason',
            'severity',
            'requires_review',
            'source',
            'message',
            'created_at',
        ]
        read_only_fields = fields

    def get_subject_name(self, obj):
        if obj.subject is None:
            return None
        return obj.subject.get_full_name() or obj.subject.get_username()


class VerifySerializer(serializers.Serializer):
    credentialType = serializers.ChoiceField(choices=Method.choices)
    payload = serializers.JSONField(required=False, allow_null=True)
    facilityId = serializers.CharField(required=False, allow_blank=True)
    deviceId = serializers.CharField(required=False, allow_blank=True)


class StaffPinSerializer(serializers.Serializer):
    pinCode = serializers.CharField(max_length=32, trim_whitespace=True)
    facilityId = serializers.CharField(required=False, allow_blank=True)


class StaffBiometricSerializer(serializers.Serializer):
    assertion = serializers.JSONField(required=False, allow_null=True)
    facilityId = serializers.CharField(required=False, allow_blank=True)


class StaffEmergencySerializer(serializers.Serializer):
    emergencyCode = serializers.CharField(max_length=64)
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True, default='')
    facilityId = serializers.CharField(required=False, allow_blank=True)


class MarkSerializer(serializers.Serializer):
    eventId = serializers.UUIDField()


class LogAttemptSerializer(serializers.Serializer):
    method = serializers.ChoiceField(choices=Method.choices)
    success = serializers.BooleanField()
    reason = serializers.ChoiceField(choices=Reason.choices, required=False)
    error = serializers.CharField(max_length=255, required=False, allow_blank=True, allow_null=True)
    facilityId = serializers.CharField(required=False, allow_blank=True)


class RateLimitResetSerializer(serializers.Serializer):
    subjectKey = serializers.CharField(max_length=128)
    action = serializers.CharField(max_length=64, required=False, allow_blank=True)
    reason = serializers.CharField(max_length=255)


class BiometricEnrollmentSerializer(serializers.ModelSerializer):
    secret = serializers.CharField(write_only=True, min_length=16, max_length=255)

    class Meta:
        model = BiometricEnrollment
        fields = ['id', 'credential_id', 'secret', 'label', 'is_active', 'created_at', 'last_used_at']
        read_only_fields = ['id', 'is_active', 'created_at', 'last_used_at']
