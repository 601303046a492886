"""Sliding-window attempt counter keyed by (subject, action).

State lives in the database so enforcement is server-side and shared across
workers. Each check locks its row, so parallel requests for the same key are
serialized and cannot both pass a check that should block the second.

On SQLite ``select_for_update`` is a no-op; writers are serialized by the
database write lock instead, and a lock error surfaces as ``DatabaseError``,
which fails closed unless the policy is ``fail_open``.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from django.conf import settings
from django.db import DatabaseError, transaction
from django.utils import timezone

from access.errors import ConfigurationError, StorageUnavailable
from access.models import RateLimitState


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    max_attempts: int
    window_seconds: int
    block_seconds: int
    fail_open: bool = False

    @classmethod
    def from_config(cls, config: dict) -> "RateLimitPolicy":
        return cls(
            max_attempts=int(config["max_attempts"]),
            window_seconds=int(config["window_seconds"]),
            block_seconds=int(config["block_seconds"]),
            fail_open=bool(config.get("fail_open", False)),
        )


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining_attempts: int
    blocked_until: datetime | None = None
    degraded: bool = False

    def retry_after(self, now: datetime | None = None) -> int:
        if self.blocked_until is None:
            return 0
        now = now or timezone.now()
        return max(0, math.ceil((self.blocked_until - now).total_seconds()))


class RateLimiter:
    def __init__(self, policies: dict | None = None):
        self._policies = policies

    def policy_for(self, action: str) -> RateLimitPolicy:
        policies = self._policies if self._policies is not None else settings.ACCESS_RATE_LIMITS
        config = policies.get(action)
        if not config:
            logger.critical("No rate-limit policy configured", extra={"action": action})
            raise ConfigurationError(f"No rate-limit policy for '{action}'")
        try:
            return RateLimitPolicy.from_config(config)
        except (KeyError, TypeError, ValueError) as exc:
            logger.critical("Invalid rate-limit policy", extra={"action": action})
            raise ConfigurationError(f"Invalid rate-limit policy for '{action}'") from exc

    def check_and_record(self, subject_key: str, action: str, *, now: datetime | None = None) -> RateLimitResult:
        policy = self.policy_for(action)
        now = now or timezone.now()
        try:
            return self._check_and_record(subject_key, action, policy, now)
        except DatabaseError:
            logger.exception(
                "Rate-limit storage unavailable",
                extra={"subject_key": subject_key, "action": action, "fail_open": policy.fail_open},
            )
            if policy.fail_open:
                return RateLimitResult(allowed=True, remaining_attempts=policy.max_attempts, degraded=True)
            raise StorageUnavailable()

    def _check_and_record(
        self,
        subject_key: str,
        action: str,
        policy: RateLimitPolicy,
        now: datetime,
    ) -> RateLimitResult:
        with transaction.atomic():
            state, _ = RateLimitState.objects.select_for_update().get_or_create(
                subject_key=subject_key,
                action=action,
            )

            if state.blocked_until is not None:
                if now < state.blocked_until:
                    return RateLimitResult(allowed=False, remaining_attempts=0, blocked_until=state.blocked_until)
                # Block served: start a fresh window.
                state.blocked_until = None
                state.attempts = []

            window_start = (now - timedelta(seconds=policy.window_seconds)).timestamp()
            attempts = sorted(ts for ts in (state.attempts or []) if ts > window_start)

            if len(attempts) >= policy.max_attempts:
                state.attempts = attempts
                state.blocked_until = now + timedelta(seconds=policy.block_seconds)
                state.save(update_fields=["attempts", "blocked_until", "updated_at"])
                logger.warning(
                    "Rate limit exceeded",
                    extra={"subject_key": subject_key, "action": action, "blocked_until": state.blocked_until.isoformat()},
                )
                return RateLimitResult(allowed=False, remaining_attempts=0, blocked_until=state.blocked_until)

            attempts.append(now.timestamp())
            state.attempts = attempts
            state.save(update_fields=["attempts", "blocked_until", "updated_at"])
            return RateLimitResult(allowed=True, remaining_attempts=policy.max_attempts - len(attempts))

    def reset(self, subject_key: str, action: str | None = None) -> int:
        """Clear logs and blocks for a key. Callers audit and throttle this."""
        queryset = RateLimitState.objects.filter(subject_key=subject_key)
        if action:
            queryset = queryset.filter(action=action)
        cleared, _ = queryset.delete()
        logger.warning("Rate limit reset", extra={"subject_key": subject_key, "action": action or "*"})
        return cleared
