import hashlib
import hmac
import json
import threading
from datetime import datetime, timedelta, timezone as dt_timezone
from io import StringIO
from unittest.mock import patch

import requests
from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import DatabaseError, connection
from django.test import TestCase, TransactionTestCase
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase

from access.credentials import (
    AdminOverrideCredential,
    BiometricCredential,
    EmergencyCredential,
    MalformedCredential,
    PinCredential,
    QRCredential,
    build_credential,
    decode_qr_payload,
)
from access.errors import ConfigurationError, Reason, Severity, StorageUnavailable
from access.models import AccessAttempt, AuditEvent, BiometricEnrollment, RateLimitState
from access.services.rate_limit import RateLimiter
from access.services.verifier import AccessVerifier, VerificationContext
from attendance.models import AttendanceRecord
from devices.models import Device
from facilities.models import AccessProfile, Facility


User = get_user_model()
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=dt_timezone.utc)

TIGHT_QR = {'qr': {'max_attempts': 3, 'window_seconds': 60, 'block_seconds': 300}}


def qr_payload(owner):
    return {'type': 'gym_owner', 'gymOwnerId': str(owner.pk), 'gymName': 'Downtown'}


class GymFixtureMixin:
    """Owner, facility, member, trainer and an online device at NOW."""

    def make_gym(self, now=NOW):
        self.owner = User.objects.create_user(username='owner', password='pwd12345')
        self.facility = Facility.objects.create(name='Downtown', code='downtown', owner=self.owner)
        AccessProfile.objects.create(user=self.owner, facility=self.facility, role=AccessProfile.ROLE_OWNER)

        self.member = User.objects.create_user(username='member', password='pwd12345')
        self.member_profile = AccessProfile.objects.create(
            user=self.member,
            facility=self.facility,
            membership_end_date=now + timedelta(days=30),
        )

        self.trainer = User.objects.create_user(username='trainer', password='pwd12345')
        self.trainer_profile = AccessProfile(user=self.trainer, facility=self.facility, role=AccessProfile.ROLE_TRAINER)
        self.trainer_profile.set_pin('4821')
        self.trainer_profile.save()

        self.device = Device.objects.create(
            owner=self.owner,
            facility=self.facility,
            device_id='ESP-01',
            location='Front door',
            last_heartbeat_at=now,
        )


class RateLimiterTests(TestCase):
    def setUp(self):
        self.limiter = RateLimiter(policies=TIGHT_QR)

    def test_fourth_attempt_in_window_is_blocked_until_block_expires(self):
        for offset in range(3):
            result = self.limiter.check_and_record('user:1', 'qr', now=NOW + timedelta(seconds=offset))
            self.assertTrue(result.allowed)

        blocked = self.limiter.check_and_record('user:1', 'qr', now=NOW + timedelta(seconds=3))
        self.assertFalse(blocked.allowed)
        self.assertEqual(blocked.remaining_attempts, 0)
        self.assertEqual(blocked.retry_after(NOW + timedelta(seconds=3)), 300)

        still_blocked = self.limiter.check_and_record('user:1', 'qr', now=NOW + timedelta(seconds=100))
        self.assertFalse(still_blocked.allowed)

        after_block = self.limiter.check_and_record('user:1', 'qr', now=NOW + timedelta(seconds=304))
        self.assertTrue(after_block.allowed)
        self.assertEqual(after_block.remaining_attempts, 2)

    def test_attempts_outside_window_are_pruned(self):
        for offset in range(3):
            self.limiter.check_and_record('user:1', 'qr', now=NOW + timedelta(seconds=offset))

        result = self.limiter.check_and_record('user:1', 'qr', now=NOW + timedelta(seconds=61))

        self.assertTrue(result.allowed)
        self.assertEqual(result.remaining_attempts, 1)
        self.assertEqual(len(RateLimitState.objects.get(subject_key='user:1').attempts), 2)

    def test_keys_are_independent(self):
        for offset in range(3):
            self.limiter.check_and_record('user:1', 'qr', now=NOW + timedelta(seconds=offset))

        self.assertTrue(self.limiter.check_and_record('user:2', 'qr', now=NOW).allowed)

    def test_reset_clears_block(self):
        for offset in range(4):
            self.limiter.check_and_record('user:1', 'qr', now=NOW + timedelta(seconds=offset))

        self.assertEqual(self.limiter.reset('user:1', 'qr'), 1)
        self.assertTrue(self.limiter.check_and_record('user:1', 'qr', now=NOW + timedelta(seconds=5)).allowed)

    def test_missing_policy_is_configuration_error(self):
        with self.assertRaises(ConfigurationError):
            self.limiter.check_and_record('user:1', 'pin', now=NOW)

    def test_storage_failure_fails_open_only_when_policy_allows(self):
        limiter = RateLimiter(
            policies={
                'heartbeat': {'max_attempts': 1, 'window_seconds': 60, 'block_seconds': 60, 'fail_open': True},
                'qr': TIGHT_QR['qr'],
            }
        )
        with patch.object(RateLimiter, '_check_and_record', side_effect=DatabaseError):
            degraded = limiter.check_and_record('device:ESP-01', 'heartbeat', now=NOW)
            self.assertTrue(degraded.allowed)
            self.assertTrue(degraded.degraded)

            with self.assertRaises(StorageUnavailable):
                limiter.check_and_record('user:1', 'qr', now=NOW)


class RateLimiterConcurrencyTests(TransactionTestCase):
    workers = 8

    def test_parallel_attempts_cannot_exceed_the_budget(self):
        limiter = RateLimiter(policies=TIGHT_QR)
        barrier = threading.Barrier(self.workers)
        outcomes = []
        lock = threading.Lock()

        def attempt():
            try:
                barrier.wait()
                allowed = limiter.check_and_record('user:race', 'qr', now=NOW).allowed
            except StorageUnavailable:
                allowed = False
            finally:
                connection.close()
            with lock:
                outcomes.append(allowed)

        threads = [threading.Thread(target=attempt) for _ in range(self.workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(outcomes), self.workers)
        self.assertLessEqual(outcomes.count(True), 3)
        state = RateLimitState.objects.filter(subject_key='user:race', action='qr').first()
        if state is not None:
            self.assertLessEqual(len(state.attempts), 3)


class CredentialParsingTests(TestCase):
    def test_qr_payload_must_identify_a_gym(self):
        with self.assertRaises(MalformedCredential):
            decode_qr_payload('{"type": "member"}')
        with self.assertRaises(MalformedCredential):
            decode_qr_payload('not json')
        with self.assertRaises(MalformedCredential):
            decode_qr_payload({'type': 'gym_owner'})

    def test_impossible_timestamp_is_ignored(self):
        payload = decode_qr_payload({'type': 'gym_owner', 'gymOwnerId': '7', 'timestamp': '2026-13-45T10:00:00'})

        self.assertEqual(payload.gym_owner_id, '7')
        self.assertIsNone(payload.issued_at)

    def test_pin_shape(self):
        self.assertTrue(PinCredential('1234').is_well_formed)
        self.assertTrue(PinCredential('12345678').is_well_formed)
        self.assertFalse(PinCredential('123').is_well_formed)
        self.assertFalse(PinCredential('12a4').is_well_formed)

    def test_unknown_method_is_rejected(self):
        with self.assertRaises(MalformedCredential):
            build_credential('retina', {})


class AccessVerifierTests(GymFixtureMixin, TestCase):
    def setUp(self):
        self.make_gym()
        self.verifier = AccessVerifier(rate_limiter=RateLimiter(policies={**settings.ACCESS_RATE_LIMITS, **TIGHT_QR}))

    def context(self, subject, **kwargs):
        kwargs.setdefault('now', NOW)
        return VerificationContext(subject=subject, claimed_subject_id=str(subject.pk), **kwargs)

    def test_member_qr_at_device_is_granted_and_recorded_once(self):
        decision = self.verifier.verify(QRCredential(qr_payload(self.owner)), self.context(self.member, device_id='esp-01'))

        self.assertTrue(decision.granted)
        self.assertEqual(decision.reason, Reason.GRANTED)
        self.assertTrue(decision.attendance_created)
        self.assertEqual(AttendanceRecord.objects.filter(member=self.member).count(), 1)
        self.device.refresh_from_db()
        self.assertEqual(self.device.granted_count, 1)
        self.assertEqual(self.device.last_activity_at, NOW)

        attempt = AccessAttempt.objects.get()
        self.assertEqual(attempt.source, AccessAttempt.SOURCE_DEVICE)
        self.assertEqual(attempt.device, self.device)
        self.assertEqual(decision.device_payload()['nodeMcuResponse'], 'ACTIVE')
        self.assertEqual(decision.device_payload()['deviceResponse']['action'], 'GRANT_ACCESS')

    def test_member_cannot_use_staff_pin(self):
        decision = self.verifier.verify(PinCredential('4821'), self.context(self.member))

        self.assertFalse(decision.granted)
        self.assertEqual(decision.reason, Reason.INVALID_CREDENTIAL)
        self.assertFalse(AttendanceRecord.objects.exists())
        self.assertEqual(AccessAttempt.objects.get().reason, Reason.INVALID_CREDENTIAL)

    def test_rapid_qr_attempts_are_rate_limited(self):
        reasons = []
        for offset in range(5):
            decision = self.verifier.verify(
                QRCredential(qr_payload(self.owner)),
                self.context(self.member, now=NOW + timedelta(seconds=offset)),
            )
            reasons.append(decision.reason)

        self.assertEqual(reasons[:3], [Reason.GRANTED] * 3)
        self.assertEqual(reasons[3:], [Reason.RATE_LIMITED] * 2)
        self.assertEqual(AccessAttempt.objects.count(), 5)
        limited = AccessAttempt.objects.filter(reason=Reason.RATE_LIMITED).first()
        self.assertEqual(limited.severity, Severity.ELEVATED)

    def test_offline_device_denies_entry(self):
        Device.objects.filter(pk=self.device.pk).update(last_heartbeat_at=NOW - timedelta(minutes=10))

        decision = self.verifier.verify(QRCredential(qr_payload(self.owner)), self.context(self.member, device_id='ESP-01'))

        self.assertFalse(decision.granted)
        self.assertEqual(decision.reason, Reason.DEVICE_OFFLINE)
        self.assertEqual(decision.hint, 'contact-operator')
        self.assertFalse(AttendanceRecord.objects.exists())
        self.device.refresh_from_db()
        self.assertEqual(self.device.denied_count, 1)
        self.assertEqual(decision.device_payload()['nodeMcuResponse'], 'INACTIVE')

    def test_unknown_and_deactivated_devices(self):
        decision = self.verifier.verify(QRCredential(qr_payload(self.owner)), self.context(self.member, device_id='GHOST'))
        self.assertEqual(decision.reason, Reason.UNKNOWN_DEVICE)

        Device.objects.filter(pk=self.device.pk).update(status=Device.STATUS_DEACTIVATED)
        decision = self.verifier.verify(QRCredential(qr_payload(self.owner)), self.context(self.member, device_id='ESP-01'))
        self.assertEqual(decision.reason, Reason.DEACTIVATED)

    def test_expired_membership(self):
        AccessProfile.objects.filter(pk=self.member_profile.pk).update(membership_end_date=NOW - timedelta(days=1))

        decision = self.verifier.verify(QRCredential(qr_payload(self.owner)), self.context(self.member))

        self.assertEqual(decision.reason, Reason.MEMBERSHIP_EXPIRED)
        self.assertEqual(decision.membership.days_remaining, 0)

    def test_active_flag_keeps_expired_member_inside(self):
        AccessProfile.objects.filter(pk=self.member_profile.pk).update(
            membership_end_date=NOW - timedelta(days=1),
            membership_status=AccessProfile.STATUS_ACTIVE,
        )

        decision = self.verifier.verify(QRCredential(qr_payload(self.owner)), self.context(self.member))

        self.assertTrue(decision.granted)

    def test_wrong_facility_is_reported_before_expiry(self):
        other_owner = User.objects.create_user(username='other', password='pwd12345')
        Facility.objects.create(name='Uptown', code='uptown', owner=other_owner)
        AccessProfile.objects.filter(pk=self.member_profile.pk).update(membership_end_date=NOW - timedelta(days=1))

        decision = self.verifier.verify(QRCredential(qr_payload(other_owner)), self.context(self.member))

        self.assertEqual(decision.reason, Reason.WRONG_FACILITY)

    def test_unknown_gym_owner_is_invalid(self):
        payload = {'type': 'gym_owner', 'gymOwnerId': '99999'}

        decision = self.verifier.verify(QRCredential(payload), self.context(self.member))

        self.assertEqual(decision.reason, Reason.INVALID_CREDENTIAL)

    def test_trainer_pin_is_granted_without_attendance(self):
        decision = self.verifier.verify(PinCredential('4821'), self.context(self.trainer))

        self.assertTrue(decision.granted)
        self.assertEqual(decision.facility, self.facility)
        self.assertFalse(AttendanceRecord.objects.exists())

    def test_wrong_pin_is_denied(self):
        decision = self.verifier.verify(PinCredential('0000'), self.context(self.trainer))

        self.assertEqual(decision.reason, Reason.INVALID_CREDENTIAL)

    def test_biometric_assertion(self):
        BiometricEnrollment.objects.create(user=self.trainer, credential_id='cred-1', secret='s3cret-s3cret-key')
        signature = hmac.new(b's3cret-s3cret-key', b'nonce-1', hashlib.sha256).hexdigest()

        granted = self.verifier.verify(
            BiometricCredential({'credentialId': 'cred-1', 'challenge': 'nonce-1', 'signature': signature}),
            self.context(self.trainer),
        )
        forged = self.verifier.verify(
            BiometricCredential({'credentialId': 'cred-1', 'challenge': 'nonce-1', 'signature': 'deadbeef'}),
            self.context(self.trainer),
        )

        self.assertTrue(granted.granted)
        self.assertEqual(forged.reason, Reason.INVALID_CREDENTIAL)
        self.assertIsNotNone(BiometricEnrollment.objects.get().last_used_at)

    def test_biometric_without_assertion_is_unsupported(self):
        decision = self.verifier.verify(BiometricCredential(None), self.context(self.trainer))

        self.assertEqual(decision.reason, Reason.UNSUPPORTED_DEVICE)
        self.assertEqual(decision.hint, 'use-another-method')

    def test_emergency_grant_is_flagged_for_review(self):
        self.facility.set_emergency_code('911911')
        self.facility.save()

        decision = self.verifier.verify(EmergencyCredential('911911', 'fire drill'), self.context(self.trainer))

        self.assertTrue(decision.granted)
        self.assertTrue(decision.requires_review)
        attempt = AccessAttempt.objects.get()
        self.assertTrue(attempt.requires_review)
        self.assertEqual(attempt.severity, Severity.REVIEW)
        self.assertEqual(attempt.detail['emergency_reason'], 'fire drill')

    def test_emergency_without_configured_code_is_a_system_error(self):
        decision = self.verifier.verify(EmergencyCredential('911911'), self.context(self.trainer))

        self.assertFalse(decision.granted)
        self.assertEqual(decision.reason, Reason.CONFIGURATION_ERROR)
        self.assertTrue(decision.is_system_error)
        self.assertEqual(AccessAttempt.objects.get().severity, Severity.CRITICAL)

    def test_admin_override_requires_admin_role(self):
        admin = User.objects.create_user(username='admin', password='pwd12345')
        AccessProfile.objects.create(user=admin, role=AccessProfile.ROLE_ADMIN)

        granted = self.verifier.verify(AdminOverrideCredential('door stuck'), self.context(admin, facility=self.facility))
        denied = self.verifier.verify(AdminOverrideCredential(), self.context(self.trainer, facility=self.facility))

        self.assertTrue(granted.granted)
        self.assertEqual(denied.reason, Reason.INVALID_CREDENTIAL)

    def test_actuation_timeout_denies_entry(self):
        Device.objects.filter(pk=self.device.pk).update(actuator_url='http://10.0.0.9')

        with patch('devices.client.DeviceActuatorClient.open_gate', side_effect=requests.Timeout):
            decision = self.verifier.verify(
                QRCredential(qr_payload(self.owner)),
                self.context(self.member, device_id='ESP-01'),
            )

        self.assertEqual(decision.reason, Reason.DEVICE_TIMEOUT)
        self.assertFalse(AttendanceRecord.objects.exists())

    def test_actuation_is_sent_for_granted_entry(self):
        Device.objects.filter(pk=self.device.pk).update(actuator_url='http://10.0.0.9')

        with patch('devices.client.DeviceActuatorClient.open_gate', return_value={}) as open_gate:
            decision = self.verifier.verify(
                QRCredential(qr_payload(self.owner)),
                self.context(self.member, device_id='ESP-01'),
            )

        self.assertTrue(decision.granted)
        open_gate.assert_called_once_with('ESP-01', 5000, message='Welcome to Downtown!')

    def test_rate_limit_storage_failure_fails_closed(self):
        with patch.object(RateLimiter, '_check_and_record', side_effect=DatabaseError):
            decision = self.verifier.verify(QRCredential(qr_payload(self.owner)), self.context(self.member))

        self.assertFalse(decision.granted)
        self.assertEqual(decision.reason, Reason.STORAGE_ERROR)
        self.assertFalse(AttendanceRecord.objects.exists())

    def test_out_of_range_qr_timestamp_is_still_granted(self):
        credential = QRCredential({**qr_payload(self.owner), 'timestamp': '2026-13-45T10:00:00'})

        decision = self.verifier.verify(credential, self.context(self.member))

        self.assertTrue(decision.granted)
        self.assertEqual(AccessAttempt.objects.count(), 1)

    def test_unexpected_failure_is_a_logged_denial(self):
        with patch.object(AccessVerifier, '_validate_credential', side_effect=RuntimeError('boom')):
            with self.assertLogs('access.services.verifier', level='ERROR'):
                decision = self.verifier.verify(QRCredential(qr_payload(self.owner)), self.context(self.member))

        self.assertFalse(decision.granted)
        self.assertTrue(decision.is_system_error)
        self.assertEqual(AccessAttempt.objects.get().reason, Reason.CONFIGURATION_ERROR)
        self.assertFalse(AttendanceRecord.objects.exists())

    def test_attempt_write_failure_never_grants(self):
        with patch('access.services.verifier.AccessAttempt.objects.create', side_effect=DatabaseError):
            decision = self.verifier.verify(QRCredential(qr_payload(self.owner)), self.context(self.member))

        self.assertFalse(decision.granted)
        self.assertEqual(decision.reason, Reason.STORAGE_ERROR)
        self.assertIsNone(decision.attempt)
        self.assertFalse(AttendanceRecord.objects.exists())


class VerifyApiTests(GymFixtureMixin, APITestCase):
    def setUp(self):
        self.make_gym(now=timezone.now())

    def test_verify_qr_grants_and_mark_is_idempotent(self):
        self.client.force_authenticate(self.member)
        response = self.client.post(
            '/api/access/verify',
            {'credentialType': 'qr', 'payload': qr_payload(self.owner)},
            format='json',
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['result'], 'granted')
        self.assertEqual(response.data['member']['membershipStatus'], 'active')
        self.assertEqual(response.data['gym']['name'], 'Downtown')

        mark = self.client.post('/api/access/mark', {'eventId': response.data['eventId']}, format='json')
        again = self.client.post('/api/access/mark', {'eventId': response.data['eventId']}, format='json')

        self.assertEqual(mark.status_code, status.HTTP_200_OK)
        self.assertFalse(mark.data['created'])
        self.assertEqual(again.status_code, status.HTTP_200_OK)
        self.assertEqual(AttendanceRecord.objects.count(), 1)

    def test_mark_rejects_denied_attempt(self):
        self.client.force_authenticate(self.member)
        response = self.client.post('/api/access/verify', {'credentialType': 'pin', 'payload': '1234'}, format='json')
        self.assertEqual(response.data['reason'], 'InvalidCredential')

        mark = self.client.post('/api/access/mark', {'eventId': response.data['eventId']}, format='json')

        self.assertEqual(mark.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(AttendanceRecord.objects.exists())

    def test_mark_only_sees_own_attempts(self):
        self.client.force_authenticate(self.member)
        response = self.client.post(
            '/api/access/verify',
            {'credentialType': 'qr', 'payload': json.dumps(qr_payload(self.owner))},
            format='json',
        )

        self.client.force_authenticate(self.trainer)
        mark = self.client.post('/api/access/mark', {'eventId': response.data['eventId']}, format='json')

        self.assertEqual(mark.status_code, status.HTTP_404_NOT_FOUND)

    def test_rate_limited_verify_returns_429_with_retry_after(self):
        self.client.force_authenticate(self.member)
        with self.settings(ACCESS_RATE_LIMITS={**settings.ACCESS_RATE_LIMITS, **TIGHT_QR}):
            for _ in range(3):
                self.client.post('/api/access/verify', {'credentialType': 'qr', 'payload': qr_payload(self.owner)}, format='json')
            response = self.client.post(
                '/api/access/verify',
                {'credentialType': 'qr', 'payload': qr_payload(self.owner)},
                format='json',
            )

        self.assertEqual(response.status_code, status.HTTP_429_TOO_MANY_REQUESTS)
        self.assertEqual(response.data['reason'], 'RateLimited')
        self.assertEqual(response['Retry-After'], '300')
        self.assertEqual(response.data['hint'], 'retry-after')

    def test_storage_failure_returns_503(self):
        self.client.force_authenticate(self.member)
        with patch.object(RateLimiter, '_check_and_record', side_effect=DatabaseError):
            response = self.client.post(
                '/api/access/verify',
                {'credentialType': 'qr', 'payload': qr_payload(self.owner)},
                format='json',
            )

        self.assertEqual(response.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)
        self.assertEqual(response.data['reason'], 'StorageError')
        self.assertEqual(response.data['message'], 'Access is temporarily unavailable')

    def test_verify_with_impossible_timestamp_is_granted(self):
        self.client.force_authenticate(self.member)
        response = self.client.post(
            '/api/access/verify',
            {'credentialType': 'qr', 'payload': {**qr_payload(self.owner), 'timestamp': '2026-13-45T10:00:00'}},
            format='json',
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['result'], 'granted')
        self.assertEqual(AccessAttempt.objects.count(), 1)

    def test_unknown_facility_is_bad_request(self):
        self.client.force_authenticate(self.member)
        response = self.client.post(
            '/api/access/verify',
            {'credentialType': 'qr', 'payload': qr_payload(self.owner), 'facilityId': 'nowhere'},
            format='json',
        )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_staff_pin_endpoint(self):
        self.client.force_authenticate(self.trainer)
        response = self.client.post('/api/access/staff-pin-verify', {'pinCode': '4821', 'facilityId': 'downtown'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['method'], 'pin')
        self.assertEqual(response.data['result'], 'granted')

    def test_staff_emergency_shows_up_in_review_queue(self):
        self.facility.set_emergency_code('911911')
        self.facility.save()
        admin = User.objects.create_user(username='admin', password='pwd12345')
        AccessProfile.objects.create(user=admin, role=AccessProfile.ROLE_ADMIN)

        self.client.force_authenticate(self.trainer)
        response = self.client.post(
            '/api/access/staff-emergency-verify',
            {'emergencyCode': '911911', 'reason': 'alarm test'},
            format='json',
        )
        self.assertTrue(response.data['requiresReview'])

        forbidden = self.client.get('/api/access/reviews')
        self.client.force_authenticate(admin)
        queue = self.client.get('/api/access/reviews')

        self.assertEqual(forbidden.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(queue.status_code, status.HTTP_200_OK)
        self.assertEqual(queue.data['count'], 1)
        self.assertEqual(queue.data['results'][0]['method'], 'emergency')

    def test_biometric_enrollment_and_staff_biometric(self):
        self.client.force_authenticate(self.trainer)
        enroll = self.client.post(
            '/api/access/biometric/enroll',
            {'credential_id': 'cred-9', 'secret': 'a-long-shared-secret', 'label': 'Phone'},
            format='json',
        )
        self.assertEqual(enroll.status_code, status.HTTP_201_CREATED)
        self.assertNotIn('secret', enroll.data)

        signature = hmac.new(b'a-long-shared-secret', b'c-1', hashlib.sha256).hexdigest()
        response = self.client.post(
            '/api/access/staff-biometric-verify',
            {'assertion': {'credentialId': 'cred-9', 'challenge': 'c-1', 'signature': signature}},
            format='json',
        )
        self.assertEqual(response.data['result'], 'granted')

    def test_members_cannot_enroll_biometrics(self):
        self.client.force_authenticate(self.member)
        response = self.client.post(
            '/api/access/biometric/enroll',
            {'credential_id': 'cred-9', 'secret': 'a-long-shared-secret'},
            format='json',
        )

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_log_attempt_records_client_outcome(self):
        self.client.force_authenticate(self.member)
        response = self.client.post(
            '/api/access/log-attempt',
            {'method': 'qr', 'success': False, 'reason': 'InvalidCredential', 'error': 'Camera failed'},
            format='json',
        )

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        attempt = AccessAttempt.objects.get()
        self.assertEqual(attempt.source, AccessAttempt.SOURCE_CLIENT)
        self.assertEqual(attempt.message, 'Camera failed')
        self.assertFalse(AttendanceRecord.objects.exists())

    def test_client_reported_success_cannot_be_marked_as_attendance(self):
        self.client.force_authenticate(self.member)
        logged = self.client.post(
            '/api/access/log-attempt',
            {'method': 'qr', 'success': True, 'facilityId': 'downtown'},
            format='json',
        )
        self.assertEqual(logged.status_code, status.HTTP_201_CREATED)

        mark = self.client.post('/api/access/mark', {'eventId': logged.data['eventId']}, format='json')

        self.assertEqual(mark.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(AttendanceRecord.objects.count(), 0)

    def test_membership_status(self):
        self.client.force_authenticate(self.member)
        response = self.client.get('/api/access/membership')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], 'active')
        self.assertIn(response.data['daysRemaining'], (30, 31))
        self.assertEqual(response.data['profile']['role'], 'member')

    def test_admin_can_reset_rate_limit(self):
        RateLimiter(policies=TIGHT_QR).check_and_record(f'user:{self.member.pk}', 'qr')
        admin = User.objects.create_user(username='admin', password='pwd12345', is_superuser=True)

        self.client.force_authenticate(self.trainer)
        forbidden = self.client.post(
            '/api/access/rate-limits/reset',
            {'subjectKey': f'user:{self.member.pk}', 'reason': 'locked out'},
            format='json',
        )
        self.client.force_authenticate(admin)
        response = self.client.post(
            '/api/access/rate-limits/reset',
            {'subjectKey': f'user:{self.member.pk}', 'action': 'qr', 'reason': 'locked out'},
            format='json',
        )

        self.assertEqual(forbidden.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['cleared'], 1)
        self.assertFalse(RateLimitState.objects.filter(subject_key=f'user:{self.member.pk}').exists())
        event = AuditEvent.objects.get(event_code='rate_limit.reset')
        self.assertEqual(event.actor, admin)
        self.assertEqual(event.metadata['reason'], 'locked out')

    def test_verify_requires_authentication(self):
        response = self.client.post('/api/access/verify', {'credentialType': 'qr'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)


class DeviceValidateApiTests(GymFixtureMixin, APITestCase):
    def setUp(self):
        self.make_gym(now=timezone.now())

    def test_legacy_firmware_payload_is_granted(self):
        response = self.client.post(
            '/api/devices/validate',
            {'deviceId': 'esp-01', 'gymOwnerId': str(self.owner.pk), 'memberId': str(self.member.pk)},
            format='json',
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['nodeMcuResponse'], 'ACTIVE')
        self.assertEqual(response.data['deviceResponse']['duration'], 5000)
        self.assertEqual(AttendanceRecord.objects.count(), 1)

    def test_unknown_member_is_denied_with_200(self):
        response = self.client.post(
            '/api/devices/validate',
            {
                'deviceId': 'ESP-01',
                'credentialPayload': {'subjectId': '424242', 'method': 'qr', 'payload': qr_payload(self.owner)},
            },
            format='json',
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['nodeMcuResponse'], 'INACTIVE')
        self.assertEqual(response.data['deviceResponse']['action'], 'DENY_ACCESS')
        self.assertEqual(AccessAttempt.objects.get().subject_key, 'claimed:424242')

    def test_validate_requires_credential(self):
        response = self.client.post('/api/devices/validate', {'deviceId': 'ESP-01'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)


class VerifyCredentialCommandTests(GymFixtureMixin, TestCase):
    def setUp(self):
        self.make_gym(now=timezone.now())

    def test_grant_exits_cleanly(self):
        out = StringIO()
        call_command(
            'verify_credential',
            '--subject', 'member',
            '--method', 'qr',
            '--payload', json.dumps(qr_payload(self.owner)),
            stdout=out,
        )

        self.assertIn('Granted', out.getvalue())
        self.assertEqual(AttendanceRecord.objects.count(), 1)

    def test_denial_exits_with_status_one(self):
        with self.assertRaises(CommandError) as ctx:
            call_command('verify_credential', '--subject', 'member', '--method', 'pin', '--payload', '1234')

        self.assertEqual(ctx.exception.returncode, 1)
        self.assertIn('InvalidCredential', str(ctx.exception))

    def test_system_error_exits_with_status_two(self):
        with self.assertRaises(CommandError) as ctx:
            call_command('verify_credential', '--subject', 'trainer', '--method', 'emergency', '--payload', '911911')

        self.assertEqual(ctx.exception.returncode, 2)

    def test_unknown_subject_exits_with_status_two(self):
        with self.assertRaises(CommandError) as ctx:
            call_command('verify_credential', '--subject', 'ghost', '--method', 'qr')

        self.assertEqual(ctx.exception.returncode, 2)
