from rest_framework import serializers
from .models import AccessProfile, Facility


class FacilitySerializer(serializers.ModelSerializer):
    has_emergency_code = serializers.BooleanField(read_only=True)

    class Meta:
        model = Facility
        fields = ['id', 'name', 'code', 'owner', 'has_emergency_code', 'created_at']
        read_only_fields = ['owner', 'created_at']


class EmergencyCodeSerializer(serializers.Serializer):
    emergency_code = serializers.CharField(min_length=6, max_length=64, write_only=True)


class AccessProfileSerializer(serializers.ModelSerializer):
    username = serializers.CharField(source='user.username', read_only=True)

    class Meta:
        model = AccessProfile
        fields = ['id', 'username', 'facility', 'role', 'membership_end_date', 'membership_status']
        read_only_fields = fields
