"""Credential variants accepted by the verifier.

Each variant carries only what its method needs; ``build_credential`` maps a
wire ``(method, payload)`` pair onto one of them so every entry point funnels
into the same verification path.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Union

from django.db import models
from django.utils import timezone
from django.utils.dateparse import parse_datetime

QR_PAYLOAD_TYPE = "gym_owner"
PIN_MIN_LENGTH = 4
PIN_MAX_LENGTH = 8
EMERGENCY_CODE_MIN_LENGTH = 6


class Method(models.TextChoices):
    QR = "qr", "QR credential"
    PIN = "pin", "Staff PIN"
    BIOMETRIC = "biometric", "Biometric assertion"
    EMERGENCY = "emergency", "Emergency code"
    ADMIN_OVERRIDE = "admin-override", "Administrative override"


class MalformedCredential(ValueError):
    pass


@dataclass(frozen=True)
class QRPayload:
    gym_owner_id: str
    gym_name: str = ""
    # Advisory only; decisions always use server time.
    issued_at: datetime | None = None


@dataclass(frozen=True)
class QRCredential:
    payload: Any
    method: ClassVar[str] = Method.QR


@dataclass(frozen=True)
class PinCredential:
    code: str = field(repr=False)
    method: ClassVar[str] = Method.PIN

    @property
    def is_well_formed(self) -> bool:
        return self.code.isdigit() and PIN_MIN_LENGTH <= len(self.code) <= PIN_MAX_LENGTH


@dataclass(frozen=True)
class BiometricCredential:
    assertion: dict | None
    method: ClassVar[str] = Method.BIOMETRIC

    @property
    def is_supported(self) -> bool:
        if not isinstance(self.assertion, dict):
            return False
        return self.assertion.get("supported", True) is not False


@dataclass(frozen=True)
class EmergencyCredential:
    code: str = field(repr=False)
    reason: str = ""
    method: ClassVar[str] = Method.EMERGENCY


@dataclass(frozen=True)
class AdminOverrideCredential:
    note: str = ""
    method: ClassVar[str] = Method.ADMIN_OVERRIDE


Credential = Union[QRCredential, PinCredential, BiometricCredential, EmergencyCredential, AdminOverrideCredential]


def decode_qr_payload(raw: Any) -> QRPayload:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise MalformedCredential("QR payload is not valid JSON") from exc

    if not isinstance(raw, dict):
        raise MalformedCredential("QR payload must be an object")
    if raw.get("type") != QR_PAYLOAD_TYPE:
        raise MalformedCredential("QR payload does not identify a gym")

    gym_owner_id = str(raw.get("gymOwnerId") or "").strip()
    if not gym_owner_id:
        raise MalformedCredential("QR payload is missing gymOwnerId")

    try:
        issued_at = parse_datetime(str(raw.get("timestamp") or ""))
    except ValueError:
        issued_at = None
    return QRPayload(
        gym_owner_id=gym_owner_id,
        gym_name=str(raw.get("gymName") or ""),
        issued_at=issued_at,
    )


def encode_qr_payload(gym_owner_id, gym_name: str, *, now: datetime | None = None) -> str:
    return json.dumps(
        {
            "type": QR_PAYLOAD_TYPE,
            "gymOwnerId": str(gym_owner_id),
            "gymName": gym_name,
            "timestamp": (now or timezone.now()).isoformat(),
        }
    )


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def build_credential(method: str, payload: Any = None) -> Credential:
    method = _as_text(method).lower()
    if method == Method.QR:
        return QRCredential(payload=payload)
    if method == Method.PIN:
        return PinCredential(code=_as_text(payload))
    if method == Method.BIOMETRIC:
        return BiometricCredential(assertion=payload if isinstance(payload, dict) else None)
    if method == Method.EMERGENCY:
        if isinstance(payload, dict):
            return EmergencyCredential(code=_as_text(payload.get("code")), reason=_as_text(payload.get("reason")))
        return EmergencyCredential(code=_as_text(payload))
    if method == Method.ADMIN_OVERRIDE:
        return AdminOverrideCredential(note=_as_text(payload) if not isinstance(payload, dict) else "")
    raise MalformedCredential(f"Unsupported credential type: {method or '-'}")
