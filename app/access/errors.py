from __future__ import annotations

import logging

from django.db import models


class Reason(models.TextChoices):
    GRANTED = "Granted", "Granted"
    INVALID_CREDENTIAL = "InvalidCredential", "Invalid credential"
    MEMBERSHIP_EXPIRED = "MembershipExpired", "Membership expired"
    WRONG_FACILITY = "WrongFacility", "Wrong facility"
    RATE_LIMITED = "RateLimited", "Rate limited"
    DEVICE_OFFLINE = "DeviceOffline", "Device offline"
    DEVICE_TIMEOUT = "DeviceTimeout", "Device timeout"
    UNKNOWN_DEVICE = "UnknownDevice", "Unknown device"
    DEACTIVATED = "Deactivated", "Device deactivated"
    DUPLICATE_DEVICE = "DuplicateDevice", "Duplicate device"
    UNSUPPORTED_DEVICE = "UnsupportedDevice", "Unsupported device"
    CONFIGURATION_ERROR = "ConfigurationError", "Configuration error"
    STORAGE_ERROR = "StorageError", "Storage error"


class Severity(models.TextChoices):
    NORMAL = "normal", "Normal"
    ELEVATED = "elevated", "Elevated"
    CRITICAL = "critical", "Critical"
    REVIEW = "review", "Security review"


# User-safe messages. Configuration and storage failures never leak details.
REASON_MESSAGES = {
    Reason.GRANTED: "Access granted",
    Reason.INVALID_CREDENTIAL: "Invalid credential",
    Reason.MEMBERSHIP_EXPIRED: "Your membership is inactive. Please renew your subscription.",
    Reason.WRONG_FACILITY: "You are not a member of this gym",
    Reason.RATE_LIMITED: "Too many attempts, please try again later.",
    Reason.DEVICE_OFFLINE: "Entry device is offline",
    Reason.DEVICE_TIMEOUT: "Entry device did not respond",
    Reason.UNKNOWN_DEVICE: "Device is not registered",
    Reason.DEACTIVATED: "Device has been deactivated",
    Reason.DUPLICATE_DEVICE: "Device ID already registered",
    Reason.UNSUPPORTED_DEVICE: "This device cannot produce a biometric assertion",
    Reason.CONFIGURATION_ERROR: "Access is temporarily unavailable",
    Reason.STORAGE_ERROR: "Access is temporarily unavailable",
}

REASON_HINTS = {
    Reason.RATE_LIMITED: "retry-after",
    Reason.DEVICE_OFFLINE: "contact-operator",
    Reason.DEVICE_TIMEOUT: "contact-operator",
    Reason.UNSUPPORTED_DEVICE: "use-another-method",
}

REASON_SEVERITY = {
    Reason.GRANTED: Severity.NORMAL,
    Reason.INVALID_CREDENTIAL: Severity.NORMAL,
    Reason.MEMBERSHIP_EXPIRED: Severity.NORMAL,
    Reason.WRONG_FACILITY: Severity.NORMAL,
    Reason.UNSUPPORTED_DEVICE: Severity.NORMAL,
    Reason.RATE_LIMITED: Severity.ELEVATED,
    Reason.DEVICE_OFFLINE: Severity.ELEVATED,
    Reason.DEVICE_TIMEOUT: Severity.ELEVATED,
    Reason.UNKNOWN_DEVICE: Severity.ELEVATED,
    Reason.DEACTIVATED: Severity.ELEVATED,
    Reason.DUPLICATE_DEVICE: Severity.ELEVATED,
    Reason.CONFIGURATION_ERROR: Severity.CRITICAL,
    Reason.STORAGE_ERROR: Severity.CRITICAL,
}

SEVERITY_LOG_LEVELS = {
    Severity.NORMAL: logging.INFO,
    Severity.ELEVATED: logging.WARNING,
    Severity.CRITICAL: logging.CRITICAL,
    Severity.REVIEW: logging.CRITICAL,
}

# Reasons that are a system fault rather than a business outcome.
SYSTEM_REASONS = {Reason.CONFIGURATION_ERROR, Reason.STORAGE_ERROR}


def message_for(reason: str) -> str:
    return REASON_MESSAGES.get(reason, "Access denied")


def severity_for(reason: str) -> str:
    return REASON_SEVERITY.get(reason, Severity.NORMAL)


class AccessError(Exception):
    reason = Reason.INVALID_CREDENTIAL
    http_status = 400

    def __init__(self, detail: str | None = None):
        self.detail = detail or message_for(self.reason)
        super().__init__(self.detail)

    @property
    def severity(self) -> str:
        return severity_for(self.reason)

    @property
    def hint(self) -> str:
        return REASON_HINTS.get(self.reason, "")

    def as_payload(self) -> dict:
        payload = {"status": "error", "reason": str(self.reason), "message": self.detail}
        if self.hint:
            payload["hint"] = self.hint
        return payload


class CredentialError(AccessError):
    """Credential could not be decoded or matched; a business denial."""

    def __init__(self, reason: str = Reason.INVALID_CREDENTIAL, detail: str | None = None):
        self.reason = reason
        super().__init__(detail)


class DuplicateDevice(AccessError):
    reason = Reason.DUPLICATE_DEVICE
    http_status = 409


class UnknownDevice(AccessError):
    reason = Reason.UNKNOWN_DEVICE
    http_status = 404


class Deactivated(AccessError):
    reason = Reason.DEACTIVATED
    http_status = 410


class ConfigurationError(AccessError):
    reason = Reason.CONFIGURATION_ERROR
    http_status = 500


class StorageUnavailable(AccessError):
    reason = Reason.STORAGE_ERROR
    http_status = 503


class RateLimited(AccessError):
    reason = Reason.RATE_LIMITED
    http_status = 429

    def __init__(self, retry_after: int = 0, detail: str | None = None):
        self.retry_after = retry_after
        super().__init__(detail)

    def as_payload(self) -> dict:
        payload = super().as_payload()
        payload["retry_after"] = self.retry_after
        return payload
