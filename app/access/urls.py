from django.urls import path

from access.views import (
    biometric_enrollments,
    log_attempt,
    mark_attendance,
    membership_status,
    reset_rate_limit,
    review_queue,
    staff_biometric_verify,
    staff_emergency_verify,
    staff_pin_verify,
    verify_access,
)

urlpatterns = [
    path("access/verify", verify_access, name="access-verify"),
    path("access/mark", mark_attendance, name="access-mark"),
    path("access/staff-pin-verify", staff_pin_verify, name="access-staff-pin-verify"),
    path("access/staff-biometric-verify", staff_biometric_verify, name="access-staff-biometric-verify"),
    path("access/staff-emergency-verify", staff_emergency_verify, name="access-staff-emergency-verify"),
    path("access/log-attempt", log_attempt, name="access-log-attempt"),
    path("access/membership", membership_status, name="access-membership"),
    path("access/reviews", review_queue, name="access-reviews"),
    path("access/rate-limits/reset", reset_rate_limit, name="access-rate-limit-reset"),
    path("access/biometric/enroll", biometric_enrollments, name="access-biometric-enroll"),
]
