from datetime import datetime, timedelta, timezone as dt_timezone
from io import StringIO
from unittest.mock import patch

import requests
from django.contrib.auth import get_user_model
from django.core.exceptions import PermissionDenied
from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase

from access.errors import Deactivated, DuplicateDevice, UnknownDevice
from access.models import AccessAttempt, AuditEvent
from devices.models import Device
from devices.services import registry
from devices.services.liveness import can_mediate_entry, is_healthy, is_online
from facilities.models import AccessProfile, Facility


User = get_user_model()
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=dt_timezone.utc)


def make_owner(username, code):
    user = User.objects.create_user(username=username, password='pwd12345')
    facility = Facility.objects.create(name=f'{username} gym', code=code, owner=user)
    AccessProfile.objects.create(user=user, facility=facility, role=AccessProfile.ROLE_OWNER)
    return user, facility


class DeviceRegistrationTests(APITestCase):
    def setUp(self):
        self.alice, self.gym_a = make_owner('alice', 'alice-gym')
        self.bob, self.gym_b = make_owner('bob', 'bob-gym')

    def test_register_new_device(self):
        self.client.force_authenticate(self.alice)
        response = self.client.post(
            '/api/devices/register',
            {'deviceId': 'esp-01', 'location': 'Front door'},
            format='json',
        )

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        device = Device.objects.get()
        self.assertEqual(device.device_id, 'ESP-01')
        self.assertEqual(device.owner, self.alice)
        self.assertEqual(device.facility, self.gym_a)
        self.assertEqual(device.status, Device.STATUS_ACTIVE)
        self.assertEqual(device.device_type, 'NodeMCU')
        self.assertEqual(response.data['data']['device']['access_counters'], {'granted': 0, 'denied': 0})

    def test_reregister_by_same_owner_returns_existing(self):
        self.client.force_authenticate(self.alice)
        self.client.post('/api/devices/register', {'deviceId': 'ESP-01', 'location': 'Front door'}, format='json')
        response = self.client.post(
            '/api/devices/register',
            {'deviceId': 'esp-01', 'location': 'Back door'},
            format='json',
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(Device.objects.count(), 1)
        self.assertEqual(Device.objects.get().location, 'Back door')

    def test_register_id_owned_by_someone_else_conflicts(self):
        registry.register('ESP-01', self.alice, 'Front door')

        self.client.force_authenticate(self.bob)
        response = self.client.post(
            '/api/devices/register',
            {'deviceId': 'ESP-01', 'location': 'Lobby'},
            format='json',
        )

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['reason'], 'DuplicateDevice')
        self.assertEqual(Device.objects.get().owner, self.alice)

    def test_members_cannot_register_devices(self):
        member = User.objects.create_user(username='member', password='pwd12345')
        AccessProfile.objects.create(user=member, facility=self.gym_a)

        self.client.force_authenticate(member)
        response = self.client.post(
            '/api/devices/register',
            {'deviceId': 'ESP-09', 'location': 'Front door'},
            format='json',
        )

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertFalse(Device.objects.exists())

    def test_deactivated_device_cannot_be_reregistered(self):
        registry.register('ESP-01', self.alice, 'Front door')
        registry.deactivate('ESP-01', self.alice)

        with self.assertRaises(Deactivated):
            registry.register('ESP-01', self.alice, 'Front door')

    def test_registry_raises_duplicate_device(self):
        registry.register('ESP-01', self.alice, 'Front door')

        with self.assertRaises(DuplicateDevice):
            registry.register('esp-01 ', self.bob, 'Lobby')


class DeviceHeartbeatTests(APITestCase):
    def setUp(self):
        self.alice, _ = make_owner('alice', 'alice-gym')
        self.device, _ = registry.register('ESP-01', self.alice, 'Front door')

    def test_heartbeat_records_telemetry(self):
        response = self.client.post(
            '/api/devices/heartbeat',
            {'deviceId': 'esp-01', 'telemetry': {'uptime': 120, 'freeHeap': 20480, 'rssi': -60, 'firmware': '1.2'}},
            format='json',
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['ack']['deviceId'], 'ESP-01')
        self.device.refresh_from_db()
        self.assertEqual(self.device.system_info['freeHeap'], 20480)
        self.assertEqual(self.device.system_info['firmware'], '1.2')
        self.assertIn('lastUpdate', self.device.system_info)
        self.assertTrue(is_online(self.device))

    def test_heartbeat_from_unknown_device(self):
        response = self.client.post('/api/devices/heartbeat', {'deviceId': 'NOPE'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['reason'], 'UnknownDevice')

    def test_heartbeat_from_deactivated_device(self):
        registry.deactivate('ESP-01', self.alice)

        response = self.client.post('/api/devices/heartbeat', {'deviceId': 'ESP-01'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_410_GONE)
        self.assertEqual(response.data['reason'], 'Deactivated')

    @override_settings(DEVICE_API_TOKEN='shared-secret')
    def test_heartbeat_requires_device_token_when_configured(self):
        response = self.client.post('/api/devices/heartbeat', {'deviceId': 'ESP-01'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        response = self.client.post(
            '/api/devices/heartbeat',
            {'deviceId': 'ESP-01'},
            format='json',
            HTTP_X_DEVICE_TOKEN='shared-secret',
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)

    @override_settings(DEVICE_ALLOWED_IPS=['10.0.0.5'])
    def test_heartbeat_rejects_unlisted_ip(self):
        response = self.client.post('/api/devices/heartbeat', {'deviceId': 'ESP-01'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_registry_heartbeat_unknown_device_raises(self):
        with self.assertRaises(UnknownDevice):
            registry.heartbeat('MISSING', {}, now=NOW)


class DeviceLivenessTests(TestCase):
    def setUp(self):
        owner = User.objects.create_user(username='alice', password='pwd12345')
        self.device = Device.objects.create(
            owner=owner,
            device_id='ESP-01',
            location='Front door',
            heartbeat_interval=30,
            last_heartbeat_at=NOW,
            system_info={'freeHeap': 20000},
        )

    def test_online_within_three_intervals(self):
        self.assertTrue(is_online(self.device, now=NOW + timedelta(seconds=89)))
        self.assertFalse(is_online(self.device, now=NOW + timedelta(seconds=90)))

    def test_never_seen_device_is_offline(self):
        self.device.last_heartbeat_at = None

        self.assertFalse(is_online(self.device, now=NOW))

    def test_maintenance_device_cannot_mediate_entry(self):
        self.device.status = Device.STATUS_MAINTENANCE

        self.assertTrue(is_online(self.device, now=NOW))
        self.assertFalse(can_mediate_entry(self.device, now=NOW))

    def test_healthy_requires_free_heap(self):
        self.assertTrue(is_healthy(self.device, now=NOW))

        self.device.system_info = {'freeHeap': 9000}
        self.assertFalse(is_healthy(self.device, now=NOW))

    @override_settings(DEVICE_ONLINE_THRESHOLD_MULTIPLIER=2)
    def test_threshold_follows_configured_multiplier(self):
        self.assertFalse(is_online(self.device, now=NOW + timedelta(seconds=60)))


class DeviceOwnershipTests(APITestCase):
    def setUp(self):
        self.alice, _ = make_owner('alice', 'alice-gym')
        self.bob, _ = make_owner('bob', 'bob-gym')
        registry.register('ESP-A', self.alice, 'Front door')
        registry.register('ESP-B', self.bob, 'Lobby')

    def test_user_only_sees_own_devices(self):
        self.client.force_authenticate(self.alice)
        response = self.client.get('/api/devices/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([item['device_id'] for item in response.data['results']], ['ESP-A'])
        self.assertTrue(response.data['results'][0]['is_online'])

    def test_deactivate_own_device(self):
        self.client.force_authenticate(self.alice)
        response = self.client.patch('/api/devices/esp-a/deactivate/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        device = Device.objects.get(device_id='ESP-A')
        self.assertEqual(device.status, Device.STATUS_DEACTIVATED)
        self.assertIsNotNone(device.deactivated_at)
        self.assertTrue(AuditEvent.objects.filter(event_code='device.deactivated', actor=self.alice).exists())

    def test_cannot_deactivate_someone_elses_device(self):
        self.client.force_authenticate(self.alice)
        response = self.client.patch('/api/devices/ESP-B/deactivate/')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(Device.objects.get(device_id='ESP-B').status, Device.STATUS_ACTIVE)

    def test_owner_toggles_maintenance(self):
        self.client.force_authenticate(self.alice)
        response = self.client.patch('/api/devices/ESP-A/maintenance/', {'enabled': True}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        device = Device.objects.get(device_id='ESP-A')
        self.assertEqual(device.status, Device.STATUS_MAINTENANCE)
        self.assertFalse(can_mediate_entry(device))
        self.assertTrue(AuditEvent.objects.filter(event_code='device.maintenance', actor=self.alice).exists())

        restored = self.client.patch('/api/devices/ESP-A/maintenance/', {'enabled': False}, format='json')

        self.assertEqual(restored.status_code, status.HTTP_200_OK)
        self.assertEqual(Device.objects.get(device_id='ESP-A').status, Device.STATUS_ACTIVE)

    def test_deactivated_device_cannot_enter_maintenance(self):
        registry.deactivate('ESP-A', self.alice)
        self.client.force_authenticate(self.alice)
        response = self.client.patch('/api/devices/ESP-A/maintenance/', {'enabled': True}, format='json')

        self.assertEqual(response.status_code, status.HTTP_410_GONE)
        self.assertEqual(Device.objects.get(device_id='ESP-A').status, Device.STATUS_DEACTIVATED)

    def test_maintenance_requires_ownership(self):
        with self.assertRaises(PermissionDenied):
            registry.set_maintenance('ESP-B', self.alice, True)

    def test_stats_and_logs(self):
        device = Device.objects.get(device_id='ESP-A')
        AccessAttempt.objects.create(
            subject_key='claimed:7',
            method='qr',
            device=device,
            result=AccessAttempt.RESULT_DENIED,
            reason='InvalidCredential',
            source=AccessAttempt.SOURCE_DEVICE,
        )
        registry.record_decision(device, granted=False)

        self.client.force_authenticate(self.alice)
        stats = self.client.get('/api/devices/ESP-A/stats/')
        logs = self.client.get('/api/devices/ESP-A/logs/')

        self.assertEqual(stats.status_code, status.HTTP_200_OK)
        self.assertEqual(stats.data['deniedAccess'], 1)
        self.assertEqual(stats.data['totalAccessAttempts'], 1)
        self.assertEqual(stats.data['device']['online_threshold_seconds'], 90)
        self.assertEqual(logs.status_code, status.HTTP_200_OK)
        self.assertEqual(logs.data['count'], 1)
        self.assertEqual(logs.data['results'][0]['reason'], 'InvalidCredential')


class CheckDevicesCommandTests(TestCase):
    def setUp(self):
        self.alice, _ = make_owner('alice', 'alice-gym')
        registry.register('ESP-ON', self.alice, 'Front door')
        stale, _ = registry.register('ESP-OFF', self.alice, 'Back door')
        Device.objects.filter(pk=stale.pk).update(last_heartbeat_at=timezone.now() - timedelta(hours=1))

    def test_reports_online_and_offline_devices(self):
        out = StringIO()
        call_command('check_devices', stdout=out)

        output = out.getvalue()
        self.assertIn('ESP-ON', output)
        self.assertIn('ESP-OFF', output)
        self.assertIn('1/2 devices online', output)

    def test_fail_on_offline_exits_with_status_two(self):
        with self.assertRaises(CommandError) as ctx:
            call_command('check_devices', '--fail-on-offline', stdout=StringIO())

        self.assertEqual(ctx.exception.returncode, 2)
        self.assertIn('ESP-OFF', str(ctx.exception))

    def test_ping_reports_actuator_timeout(self):
        Device.objects.filter(device_id='ESP-ON').update(actuator_url='http://10.0.0.9')
        out = StringIO()

        with patch('devices.client.requests.post', side_effect=requests.Timeout):
            call_command('check_devices', '--device', 'esp-on', '--ping', stdout=out)

        self.assertIn('ping=timeout', out.getvalue())

    def test_unknown_owner_filter_fails(self):
        with self.assertRaises(CommandError):
            call_command('check_devices', '--owner', 'nobody', stdout=StringIO())
