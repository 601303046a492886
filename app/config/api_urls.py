from django.urls import path, include
from rest_framework.routers import DefaultRouter
from facilities.views import FacilityViewSet
from devices.views import DeviceViewSet
from attendance.views import AttendanceRecordViewSet

from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView

router = DefaultRouter()
router.register(r'facilities', FacilityViewSet)
router.register(r'devices', DeviceViewSet)
router.register(r'attendance', AttendanceRecordViewSet)

urlpatterns = [
    path('auth/token/', TokenObtainPairView.as_view(), name='token_obtain_pair'),
    path('auth/refresh/', TokenRefreshView.as_view(), name='token_refresh'),
    path('', include('devices.urls')),
    path('', include('access.urls')),
    path('', include(router.urls)),
]
