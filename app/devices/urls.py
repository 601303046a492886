from django.urls import path

from devices.views import device_heartbeat, device_validate, register_device

urlpatterns = [
    path("devices/register", register_device, name="device-register"),
    path("devices/heartbeat", device_heartbeat, name="device-heartbeat"),
    path("devices/validate", device_validate, name="device-validate"),
]
