from datetime import datetime, time

from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from facilities.models import Facility
from .models import AttendanceRecord
from .serializers import AttendanceRecordSerializer
from .services import ledger


def _parse_as_of(value):
    if not value:
        return timezone.now(), None
    try:
        day = parse_date(value)
        parsed = datetime.combine(day, time.max) if day else parse_datetime(value)
    except ValueError:
        parsed = None
    if parsed is None:
        return None, 'asOf must be an ISO date or datetime'
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed, timezone.get_current_timezone())
    return parsed, None


class AttendanceRecordViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = AttendanceRecord.objects.none()
    serializer_class = AttendanceRecordSerializer

    def get_queryset(self):
        return (
            AttendanceRecord.objects.filter(member=self.request.user)
            .select_related('facility__owner', 'device', 'attempt')
            .order_by('-timestamp', '-id')
        )

    @action(detail=False, methods=['get'])
    def stats(self, request):
        as_of, error = _parse_as_of(request.query_params.get('asOf'))
        if error:
            return Response({'detail': error}, status=status.HTTP_400_BAD_REQUEST)

        stats = ledger.stats_for(request.user, as_of=as_of)
        return Response(
            {
                'totalDays': stats.total_days,
                'thisMonth': stats.this_month,
                'today': stats.today,
                'averagePerWeek': stats.average_per_week,
                'currentStreak': stats.current_streak,
            }
        )

    @action(detail=False, methods=['get'], url_path='facility-stats')
    def facility_stats(self, request):
        facilities = Facility.objects.all() if request.user.is_superuser else Facility.objects.filter(owner=request.user)
        facility_value = request.query_params.get('facility', '')
        if facility_value:
            lookup = {'pk': facility_value} if facility_value.isdigit() else {'code': facility_value}
            facility = facilities.filter(**lookup).first()
        else:
            facility = facilities.order_by('id').first()
        if facility is None:
            return Response({'detail': 'Facility not found'}, status=status.HTTP_404_NOT_FOUND)

        as_of, error = _parse_as_of(request.query_params.get('asOf'))
        if error:
            return Response({'detail': error}, status=status.HTTP_400_BAD_REQUEST)

        return Response({'facility': facility.pk, **ledger.facility_stats(facility, as_of=as_of)})
