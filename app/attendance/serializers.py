from rest_framework import serializers
from .models import AttendanceRecord


class AttendanceRecordSerializer(serializers.ModelSerializer):
    facility_name = serializers.CharField(source='facility.display_name', read_only=True)
    device_id = serializers.CharField(source='device.device_id', read_only=True, default=None)
    event_id = serializers.UUIDField(source='attempt.event_id', read_only=True, default=None)

    class Meta:
        model = AttendanceRecord
        fields = ['id', 'member', 'facility', 'facility_name', 'device_id', 'event_id', 'timestamp', 'created_at']
        read_only_fields = fields
