import logging

from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from access.credentials import encode_qr_payload
from .models import Facility
from .serializers import EmergencyCodeSerializer, FacilitySerializer


logger = logging.getLogger(__name__)


class FacilityViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Facility.objects.none()
    serializer_class = FacilitySerializer

    def get_queryset(self):
        queryset = Facility.objects.select_related('owner').order_by('-id')
        if self.request.user.is_superuser:
            return queryset
        return queryset.filter(owner=self.request.user)

    @action(detail=True, methods=['post'], url_path='emergency-code')
    def emergency_code(self, request, pk=None):
        facility = self.get_object()
        serializer = EmergencyCodeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        facility.set_emergency_code(serializer.validated_data['emergency_code'])
        facility.save(update_fields=['emergency_code_hash'])
        logger.warning(
            "Emergency code rotated",
            extra={"facility": facility.code, "actor": request.user.pk},
        )
        return Response({'status': 'success'}, status=status.HTTP_200_OK)

    @action(detail=True, methods=['get'], url_path='qr-payload')
    def qr_payload(self, request, pk=None):
        facility = self.get_object()
        if facility.owner_id != request.user.pk and not request.user.is_superuser:
            return Response({'detail': 'Only the gym owner can issue QR codes'}, status=status.HTTP_403_FORBIDDEN)

        return Response(
            {
                'status': 'success',
                'qrData': encode_qr_payload(facility.owner_id, facility.display_name),
            }
        )
