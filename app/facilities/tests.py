import json
from datetime import date, datetime, timedelta, timezone as dt_timezone

from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.test import TestCase, override_settings
from rest_framework import status
from rest_framework.test import APITestCase

from access.credentials import decode_qr_payload
from facilities.membership import cached_membership_state, days_remaining, resolve
from facilities.models import AccessProfile, Facility


User = get_user_model()
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=dt_timezone.utc)


class MembershipResolverTests(TestCase):
    def test_past_end_date_is_expired_with_zero_days(self):
        state = resolve(NOW - timedelta(days=3), now=NOW)

        self.assertEqual(state.status, 'expired')
        self.assertEqual(state.days_remaining, 0)
        self.assertFalse(state.is_active)

    def test_end_date_tomorrow_leaves_one_day(self):
        state = resolve(NOW + timedelta(days=1), now=NOW)

        self.assertEqual(state.status, 'active')
        self.assertEqual(state.days_remaining, 1)

    def test_partial_days_round_up(self):
        self.assertEqual(days_remaining(NOW + timedelta(hours=1), now=NOW), 1)
        self.assertEqual(days_remaining(NOW + timedelta(days=1, seconds=1), now=NOW), 2)

    def test_end_date_equal_to_now_is_expired(self):
        state = resolve(NOW, now=NOW)

        self.assertEqual(state.status, 'expired')
        self.assertEqual(state.days_remaining, 0)

    def test_missing_end_date_is_active_without_day_count(self):
        state = resolve(None, now=NOW)

        self.assertTrue(state.is_active)
        self.assertIsNone(state.days_remaining)

    def test_explicit_active_flag_overrides_expired_date(self):
        state = resolve(NOW - timedelta(days=10), 'Active', now=NOW)

        self.assertTrue(state.is_active)
        self.assertEqual(state.days_remaining, 0)

    def test_inactive_flag_does_not_shorten_valid_membership(self):
        state = resolve(NOW + timedelta(days=5), 'Inactive', now=NOW)

        self.assertTrue(state.is_active)
        self.assertEqual(state.days_remaining, 5)

    @override_settings(TIME_ZONE='UTC')
    def test_plain_date_is_read_as_local_midnight(self):
        state = resolve(date(2026, 3, 12), now=NOW)

        self.assertEqual(state.days_remaining, 2)
        self.assertEqual(state.end_date, datetime(2026, 3, 12, tzinfo=dt_timezone.utc))


class MembershipCacheTests(TestCase):
    def setUp(self):
        cache.clear()
        owner = User.objects.create_user(username='owner', password='pwd12345')
        self.facility = Facility.objects.create(name='Downtown', code='downtown', owner=owner)
        member = User.objects.create_user(username='member', password='pwd12345')
        self.profile = AccessProfile.objects.create(
            user=member,
            facility=self.facility,
            membership_end_date=datetime(2000, 1, 1, tzinfo=dt_timezone.utc),
        )

    def test_cached_state_is_dropped_when_profile_changes(self):
        self.assertFalse(cached_membership_state(self.profile).is_active)

        self.profile.membership_status = AccessProfile.STATUS_ACTIVE
        self.profile.save()

        self.assertTrue(cached_membership_state(self.profile).is_active)

    def test_zero_ttl_skips_cache(self):
        cached_membership_state(self.profile, ttl=0)

        AccessProfile.objects.filter(pk=self.profile.pk).update(membership_status=AccessProfile.STATUS_ACTIVE)
        self.profile.refresh_from_db()

        self.assertTrue(cached_membership_state(self.profile, ttl=0).is_active)


class FacilityApiTests(APITestCase):
    def setUp(self):
        self.alice = User.objects.create_user(username='alice', password='pwd12345')
        self.bob = User.objects.create_user(username='bob', password='pwd12345')
        self.gym_a = Facility.objects.create(name='Alice Gym', code='alice-gym', owner=self.alice)
        self.gym_b = Facility.objects.create(name='Bob Gym', code='bob-gym', owner=self.bob)

    def test_owner_only_sees_own_facilities(self):
        self.client.force_authenticate(self.alice)
        response = self.client.get('/api/facilities/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        codes = [item['code'] for item in response.data['results']]
        self.assertEqual(codes, ['alice-gym'])

    def test_rotate_emergency_code(self):
        self.client.force_authenticate(self.alice)
        response = self.client.post(
            f'/api/facilities/{self.gym_a.pk}/emergency-code/',
            {'emergency_code': 'open-sesame'},
            format='json',
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.gym_a.refresh_from_db()
        self.assertTrue(self.gym_a.check_emergency_code('open-sesame'))
        self.assertFalse(self.gym_a.check_emergency_code('wrong-code'))

    def test_emergency_code_must_be_six_characters(self):
        self.client.force_authenticate(self.alice)
        response = self.client.post(
            f'/api/facilities/{self.gym_a.pk}/emergency-code/',
            {'emergency_code': '123'},
            format='json',
        )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_qr_payload_identifies_the_gym_owner(self):
        self.client.force_authenticate(self.alice)
        response = self.client.get(f'/api/facilities/{self.gym_a.pk}/qr-payload/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        payload = decode_qr_payload(response.data['qrData'])
        self.assertEqual(payload.gym_owner_id, str(self.alice.pk))
        self.assertEqual(payload.gym_name, 'Alice Gym')
        self.assertEqual(json.loads(response.data['qrData'])['type'], 'gym_owner')

    def test_other_owner_cannot_reach_facility(self):
        self.client.force_authenticate(self.bob)
        response = self.client.get(f'/api/facilities/{self.gym_a.pk}/qr-payload/')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
