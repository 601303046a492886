from datetime import date, datetime, timedelta, timezone as dt_timezone

from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework import status
from rest_framework.test import APITestCase

from access.models import AccessAttempt
from attendance.models import AttendanceRecord
from attendance.services import ledger
from facilities.models import AccessProfile, Facility


User = get_user_model()
AS_OF = datetime(2026, 3, 10, 18, 0, tzinfo=dt_timezone.utc)


def at(month, day, hour=9):
    return datetime(2026, month, day, hour, 0, tzinfo=dt_timezone.utc)


class StreakTests(TestCase):
    def test_three_consecutive_days(self):
        today = date(2026, 3, 10)
        days = [today, today - timedelta(days=1), today - timedelta(days=2)]

        self.assertEqual(ledger.current_streak(days, today), 3)

    def test_gap_breaks_the_streak(self):
        today = date(2026, 3, 10)
        days = [today, today - timedelta(days=2), today - timedelta(days=3)]

        self.assertEqual(ledger.current_streak(days, today), 1)

    def test_no_visit_today_means_no_streak(self):
        today = date(2026, 3, 10)

        self.assertEqual(ledger.current_streak([today - timedelta(days=1)], today), 0)

    def test_multiple_visits_on_one_day_count_once(self):
        today = date(2026, 3, 10)
        days = [today, today, today - timedelta(days=1)]

        self.assertEqual(ledger.current_streak(days, today), 2)


class AttendanceLedgerTests(TestCase):
    def setUp(self):
        self.owner = User.objects.create_user(username='owner', password='pwd12345')
        self.facility = Facility.objects.create(name='Downtown', code='downtown', owner=self.owner)
        self.member = User.objects.create_user(username='member', password='pwd12345')
        AccessProfile.objects.create(user=self.member, facility=self.facility)

        for timestamp in (at(3, 10, 8), at(3, 10, 17), at(3, 9), at(3, 8), at(2, 20), at(1, 1), at(3, 11)):
            ledger.record(self.member, self.facility, timestamp)

    def test_stats_as_of_a_given_moment(self):
        stats = ledger.stats_for(self.member, as_of=AS_OF)

        self.assertEqual(stats.total_days, 6)
        self.assertEqual(stats.this_month, 4)
        self.assertEqual(stats.today, 2)
        self.assertEqual(stats.average_per_week, 1)
        self.assertEqual(stats.current_streak, 3)

    def test_facility_stats(self):
        stats = ledger.facility_stats(self.facility, as_of=AS_OF)

        self.assertEqual(stats['today'], 2)
        self.assertEqual(stats['unique_members_today'], 1)
        self.assertEqual(stats['this_month'], 4)

    def test_records_are_append_only(self):
        record = AttendanceRecord.objects.order_by('timestamp').first()

        record.timestamp = AS_OF
        with self.assertRaises(ValueError):
            record.save()
        with self.assertRaises(ValueError):
            record.delete()

    def test_record_for_attempt_is_idempotent(self):
        attempt = AccessAttempt.objects.create(
            subject=self.member,
            subject_key=f'user:{self.member.pk}',
            method='qr',
            facility=self.facility,
            result=AccessAttempt.RESULT_GRANTED,
            reason='Granted',
            created_at=AS_OF,
        )

        first, created = ledger.record_for_attempt(attempt)
        second, created_again = ledger.record_for_attempt(attempt)

        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(first.pk, second.pk)
        self.assertEqual(first.timestamp, AS_OF)

    def test_staff_attempts_do_not_produce_attendance(self):
        trainer = User.objects.create_user(username='trainer', password='pwd12345')
        AccessProfile.objects.create(user=trainer, facility=self.facility, role=AccessProfile.ROLE_TRAINER)
        attempt = AccessAttempt.objects.create(
            subject=trainer,
            subject_key=f'user:{trainer.pk}',
            method='pin',
            facility=self.facility,
            result=AccessAttempt.RESULT_GRANTED,
            reason='Granted',
        )

        with self.assertRaises(ledger.NotAttendanceEvent):
            ledger.record_for_attempt(attempt)

    def test_client_reported_attempts_do_not_produce_attendance(self):
        attempt = AccessAttempt.objects.create(
            subject=self.member,
            subject_key=f'user:{self.member.pk}',
            method='qr',
            facility=self.facility,
            result=AccessAttempt.RESULT_GRANTED,
            reason='Granted',
            source=AccessAttempt.SOURCE_CLIENT,
        )
        before = AttendanceRecord.objects.count()

        with self.assertRaises(ledger.NotAttendanceEvent):
            ledger.record_for_attempt(attempt)
        self.assertEqual(AttendanceRecord.objects.count(), before)


class AttendanceApiTests(APITestCase):
    def setUp(self):
        self.owner = User.objects.create_user(username='owner', password='pwd12345')
        self.facility = Facility.objects.create(name='Downtown', code='downtown', owner=self.owner)
        self.member = User.objects.create_user(username='member', password='pwd12345')
        self.other = User.objects.create_user(username='other', password='pwd12345')

        ledger.record(self.member, self.facility, at(3, 10, 8))
        ledger.record(self.member, self.facility, at(3, 9))
        ledger.record(self.other, self.facility, at(3, 10, 10))

    def test_member_only_sees_own_records(self):
        self.client.force_authenticate(self.member)
        response = self.client.get('/api/attendance/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 2)
        self.assertEqual(response.data['results'][0]['facility_name'], 'Downtown')

    def test_stats_endpoint(self):
        self.client.force_authenticate(self.member)
        response = self.client.get('/api/attendance/stats/', {'asOf': '2026-03-10T18:00:00Z'})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['totalDays'], 2)
        self.assertEqual(response.data['today'], 1)
        self.assertEqual(response.data['currentStreak'], 2)

    def test_stats_rejects_bad_date(self):
        self.client.force_authenticate(self.member)
        response = self.client.get('/api/attendance/stats/', {'asOf': 'yesterday'})

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_facility_stats_for_owner_only(self):
        self.client.force_authenticate(self.member)
        denied = self.client.get('/api/attendance/facility-stats/', {'facility': 'downtown'})

        self.client.force_authenticate(self.owner)
        response = self.client.get('/api/attendance/facility-stats/', {'asOf': '2026-03-10'})

        self.assertEqual(denied.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['today'], 2)
        self.assertEqual(response.data['unique_members_today'], 2)
