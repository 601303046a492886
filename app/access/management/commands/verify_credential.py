from __future__ import annotations

import json

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand, CommandError

from access.credentials import MalformedCredential, Method, build_credential
from access.services.verifier import AccessVerifier, VerificationContext
from facilities.models import Facility


class Command(BaseCommand):
    help = "Run a credential through the access verifier (exit 0 granted, 1 denied, 2 system error)"

    def add_arguments(self, parser):
        parser.add_argument("--subject", required=True, help="Username or user id presenting the credential")
        parser.add_argument("--method", required=True, choices=Method.values)
        parser.add_argument("--payload", default="", help="Credential payload; JSON objects are decoded")
        parser.add_argument("--facility", help="Facility code or id")
        parser.add_argument("--device", help="Device id mediating the entry")

    def _subject(self, value: str):
        User = get_user_model()
        user = User.objects.filter(username=value).first()
        if user is None and value.isdigit():
            user = User.objects.filter(pk=int(value)).first()
        if user is None:
            raise CommandError(f"Unknown subject '{value}'", returncode=2)
        return user

    def _facility(self, value: str):
        if not value:
            return None
        lookup = {"pk": int(value)} if value.isdigit() else {"code": value}
        facility = Facility.objects.select_related("owner").filter(**lookup).first()
        if facility is None:
            raise CommandError(f"Unknown facility '{value}'", returncode=2)
        return facility

    def handle(self, *args, **options):
        subject = self._subject(options["subject"].strip())
        facility = self._facility((options.get("facility") or "").strip())

        payload = options["payload"]
        if payload.strip().startswith("{"):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError as exc:
                raise CommandError(f"Payload is not valid JSON: {exc}", returncode=2)

        try:
            credential = build_credential(options["method"], payload)
        except MalformedCredential as exc:
            raise CommandError(str(exc), returncode=2)

        decision = AccessVerifier().verify(
            credential,
            VerificationContext(
                subject=subject,
                claimed_subject_id=str(subject.pk),
                facility=facility,
                device_id=(options.get("device") or "").strip(),
            ),
        )

        summary = f"{decision.reason}: {decision.message}"
        if decision.attempt is not None:
            summary += f" (event {decision.attempt.event_id})"

        if decision.granted:
            self.stdout.write(self.style.SUCCESS(summary))
            return
        if decision.is_system_error:
            raise CommandError(summary, returncode=2)
        raise CommandError(summary, returncode=1)
