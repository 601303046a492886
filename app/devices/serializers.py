from rest_framework import serializers
from .models import DEVICE_TYPE_CHOICES, Device
from .services.liveness import is_healthy, is_online, seconds_since_heartbeat


class DeviceSerializer(serializers.ModelSerializer):
    is_online = serializers.SerializerMethodField()
    is_healthy = serializers.SerializerMethodField()
    access_counters = serializers.JSONField(read_only=True)

    class Meta:
        model = Device
        fields = [
            'id',
            'device_id',
            'owner',
            'facility',
            'device_type',
            'location',
            'status',
            'is_online',
            'is_healthy',
            'last_heartbeat_at',
            'last_activity_at',
            'system_info',
            'access_counters',
            'heartbeat_interval',
            'access_timeout_ms',
            'created_at',
            'deactivated_at',
        ]
        read_only_fields = fields

    def get_is_online(self, obj):
        return is_online(obj)

    def get_is_healthy(self, obj):
        return is_healthy(obj)


class DeviceRegistrationSerializer(serializers.Serializer):
    deviceId = serializers.CharField(max_length=100)
    ownerId = serializers.IntegerField(required=False)
    location = serializers.CharField(max_length=255)
    deviceType = serializers.ChoiceField(choices=DEVICE_TYPE_CHOICES, default='NodeMCU')
    heartbeatInterval = serializers.IntegerField(required=False, min_value=5, max_value=3600)
    actuatorUrl = serializers.URLField(required=False, allow_blank=True, default='')

    def validate_deviceId(self, value):
        value = value.strip()
        if not value:
            raise serializers.ValidationError('Device ID is required.')
        return value


class HeartbeatSerializer(serializers.Serializer):
    deviceId = serializers.CharField(max_length=100)
    telemetry = serializers.DictField(required=False, default=dict)


class MaintenanceSerializer(serializers.Serializer):
    enabled = serializers.BooleanField()


class DeviceValidateSerializer(serializers.Serializer):
    deviceId = serializers.CharField(max_length=100)
    credentialPayload = serializers.DictField(required=False)
    # Legacy NodeMCU firmware posts the gym owner and member ids directly.
    gymOwnerId = serializers.CharField(required=False)
    memberId = serializers.CharField(required=False)

    def validate(self, attrs):
        if not attrs.get('credentialPayload') and not (attrs.get('gymOwnerId') and attrs.get('memberId')):
            raise serializers.ValidationError('credentialPayload is required.')
        return attrs


class DeviceStatusSerializer(DeviceSerializer):
    seconds_since_heartbeat = serializers.SerializerMethodField()
    online_threshold_seconds = serializers.IntegerField(read_only=True)

    class Meta(DeviceSerializer.Meta):
        fields = DeviceSerializer.Meta.fields + ['seconds_since_heartbeat', 'online_threshold_seconds']
        read_only_fields = fields

    def get_seconds_since_heartbeat(self, obj):
        return seconds_since_heartbeat(obj)
