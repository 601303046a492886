from __future__ import annotations

import logging

from rest_framework.throttling import BaseThrottle

from access.errors import AccessError
from access.services.rate_limit import RateLimiter


logger = logging.getLogger(__name__)


def client_ip(request) -> str:
    forwarded = request.META.get("HTTP_X_FORWARDED_FOR")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.META.get("REMOTE_ADDR", "")


class SubjectActionThrottle(BaseThrottle):
    """Throttle a view with the shared RateLimiter under a fixed action name."""

    action = ""

    def __init__(self):
        self.limiter = RateLimiter()
        self._retry_after = None

    def get_subject_key(self, request, view) -> str:
        user = getattr(request, "user", None)
        if user is not None and user.is_authenticated:
            return f"user:{user.pk}"
        device_id = ""
        if isinstance(request.data, dict):
            device_id = str(request.data.get("deviceId") or "").strip().upper()
        if device_id:
            return f"device:{device_id}"
        return f"ip:{client_ip(request)}"

    def allow_request(self, request, view) -> bool:
        try:
            result = self.limiter.check_and_record(self.get_subject_key(request, view), self.action)
        except AccessError as exc:
            logger.error("Throttle denied by %s", exc.reason, extra={"action": self.action})
            return False
        self._retry_after = result.retry_after()
        return result.allowed

    def wait(self):
        return self._retry_after


class HeartbeatThrottle(SubjectActionThrottle):
    action = "heartbeat"


class RateLimitResetThrottle(SubjectActionThrottle):
    action = "rate-limit-reset"
