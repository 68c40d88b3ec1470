"""
Tests: Signature request transitions, service side effects, certificates and the outbox.

Run with:
    pytest proposal_engine/tests/test_signatures.py -v
"""

from datetime import datetime, timedelta, timezone

import pytest

from proposal_engine.exceptions import InvalidInputError, InvalidTransitionError, NotFoundError
from proposal_engine.models.enums import (
    NotificationStatus,
    SignatureAuditAction,
    SignatureStatus,
    SignerStatus,
    SigningOrder,
    SignOutcome,
)
from proposal_engine.models.schemas import (
    SignatureData,
    SignatureSettings,
    SignerInput,
    SignerMetadata,
)
from proposal_engine.persistence.repository import InMemoryRepository
from proposal_engine.services.notification_service import NotificationOutbox
from proposal_engine.services.signature_service import SignatureService, generate_access_code
from proposal_engine.workflows import signature_transitions as transitions

DOCUMENT = "Sealcoating proposal #1042: 9,500 sq ft at $0.22"
SIGNATURE = SignatureData(value="Pat Client")
T0 = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def _signers():
    return [
        SignerInput(email="client@example.com", name="Pat Client"),
        SignerInput(email="owner@example.com", name="Sam Owner", role="contractor"),
    ]


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def service(repo):
    return SignatureService(repo)


def _sent_request(service, settings=None):
    request = service.create_request("org-1", "proposal-1", DOCUMENT, _signers(), settings=settings)
    return service.send(request.id)


class TestTransitions:
    def test_needs_a_signer(self):
        with pytest.raises(InvalidInputError):
            transitions.create_request("org-1", "p-1", "hash", [])

    def test_orders_assigned_in_sequence(self):
        request = transitions.create_request("org-1", "p-1", "hash", _signers())
        assert [s.order for s in request.signers] == [1, 2]
        assert request.status == SignatureStatus.PENDING

    def test_input_request_is_not_mutated(self):
        request = transitions.create_request("org-1", "p-1", "hash", _signers())
        sent = transitions.send(request, T0).request
        result = transitions.sign(sent, sent.signers[0].id, SIGNATURE, SignerMetadata(), T0)
        assert result.ok
        assert sent.signers[0].status == SignerStatus.PENDING
        assert result.request.signers[0].status == SignerStatus.SIGNED

    def test_sign_before_send(self):
        request = transitions.create_request("org-1", "p-1", "hash", _signers())
        result = transitions.sign(request, request.signers[0].id, SIGNATURE, SignerMetadata(), T0)
        assert result.outcome == SignOutcome.REQUEST_NOT_ACTIVE

    def test_unknown_signer(self):
        request = transitions.send(transitions.create_request("org-1", "p-1", "hash", _signers()), T0).request
        result = transitions.sign(request, "nobody", SIGNATURE, SignerMetadata(), T0)
        assert result.outcome == SignOutcome.SIGNER_NOT_FOUND

    def test_certificate_hash_covers_signer_data(self):
        request = transitions.send(transitions.create_request("org-1", "p-1", "hash", _signers()), T0).request
        for signer in request.signers:
            request = transitions.sign(
                request, signer.id, SIGNATURE, SignerMetadata(ip_address="10.0.0.1"), T0
            ).request

        original = transitions.build_certificate(request, T0)
        altered = request.model_copy(deep=True)
        altered.signers[0].ip_address = "10.0.0.2"
        assert transitions.build_certificate(altered, T0).certificate_hash != original.certificate_hash
        assert transitions.build_certificate(request, T0).certificate_hash == original.certificate_hash


class TestSequentialSigning:
    def test_send_notifies_first_signer_only(self, service):
        request = _sent_request(service)
        assert request.status == SignatureStatus.IN_PROGRESS
        assert [m.recipient for m in service.outbox.pending()] == ["client@example.com"]

    def test_second_signer_waits(self, service):
        request = _sent_request(service)
        result = service.sign(request.id, request.signers[1].id, SIGNATURE)
        assert result.success is False
        assert result.outcome == SignOutcome.WAITING_FOR_PREVIOUS_SIGNERS
        assert service.get_request(request.id).signers[1].status == SignerStatus.PENDING

    def test_full_signing_issues_certificate(self, service):
        request = _sent_request(service)
        first, second = request.signers

        result = service.sign(request.id, first.id, SIGNATURE, SignerMetadata(ip_address="203.0.113.5"))
        assert result.success is True
        assert result.all_signed is False
        assert service.outbox.exists(f"{request.id}:{second.id}:signature_request")

        result = service.sign(request.id, second.id, SignatureData(value="Sam Owner"))
        assert result.all_signed is True
        assert result.status == SignatureStatus.COMPLETED
        assert result.certificate is not None
        assert [s.email for s in result.certificate.signers] == ["client@example.com", "owner@example.com"]
        assert result.certificate.signers[0].ip_address == "203.0.113.5"
        assert result.certificate.signers[1].ip_address == "unknown"

        stored = service.get_request(request.id)
        assert stored.status == SignatureStatus.COMPLETED
        assert stored.completed_at is not None
        assert service.get_certificate(request.id).certificate_hash == result.certificate.certificate_hash

    def test_already_signed(self, service):
        request = _sent_request(service)
        service.sign(request.id, request.signers[0].id, SIGNATURE)
        result = service.sign(request.id, request.signers[0].id, SIGNATURE)
        assert result.outcome == SignOutcome.ALREADY_SIGNED

    def test_parallel_signing_any_order(self, service):
        request = _sent_request(service, SignatureSettings(signing_order=SigningOrder.PARALLEL))
        assert len(service.outbox.pending()) == 2
        assert service.sign(request.id, request.signers[1].id, SIGNATURE).success is True
        assert service.sign(request.id, request.signers[0].id, SIGNATURE).all_signed is True


class TestAccessCodes:
    def test_generated_when_required(self, service):
        request = service.create_request(
            "org-1", "proposal-1", DOCUMENT, _signers(), settings=SignatureSettings(require_access_code=True)
        )
        for signer in request.signers:
            assert len(signer.access_code) == 6
            assert signer.access_code.isalnum() and signer.access_code.upper() == signer.access_code

    def test_wrong_code_refused(self, service):
        request = _sent_request(service, SignatureSettings(require_access_code=True))
        signer = request.signers[0]

        wrong = service.sign(request.id, signer.id, SIGNATURE, SignerMetadata(access_code="XXXXXXX"))
        assert wrong.outcome == SignOutcome.INVALID_ACCESS_CODE

        right = service.sign(request.id, signer.id, SIGNATURE, SignerMetadata(access_code=signer.access_code))
        assert right.success is True

    def test_access_code_format(self):
        assert len(generate_access_code()) == 6


class TestDeclineCancelExpire:
    def test_decline_cancels_request(self, service):
        request = _sent_request(service)
        result = service.decline(request.id, request.signers[0].id, "Price too high")
        assert result.success is True

        stored = service.get_request(request.id)
        assert stored.status == SignatureStatus.CANCELLED
        assert stored.cancelled_reason == "Price too high"

        after = service.sign(request.id, request.signers[1].id, SIGNATURE)
        assert after.outcome == SignOutcome.REQUEST_NOT_ACTIVE

    def test_decline_not_allowed(self, service):
        request = _sent_request(service, SignatureSettings(allow_decline=False))
        result = service.decline(request.id, request.signers[0].id)
        assert result.outcome == SignOutcome.DECLINE_NOT_ALLOWED

    def test_cancel(self, service):
        request = _sent_request(service)
        cancelled = service.cancel(request.id, "Scope changed")
        assert cancelled.status == SignatureStatus.CANCELLED
        with pytest.raises(InvalidTransitionError):
            service.cancel(request.id, "again")

    def test_send_twice(self, service):
        request = _sent_request(service)
        with pytest.raises(InvalidTransitionError):
            service.send(request.id)

    def test_expiry(self, service):
        request = _sent_request(service)
        later = request.expires_at + timedelta(days=1)
        assert service.process_expired_requests(now=later) == [request.id]
        assert service.get_request(request.id).status == SignatureStatus.EXPIRED
        assert service.process_expired_requests(now=later) == []

        result = service.sign(request.id, request.signers[0].id, SIGNATURE)
        assert result.outcome == SignOutcome.REQUEST_NOT_ACTIVE
        assert result.reason == "This signature request has expired"

    def test_missing_request(self, service):
        with pytest.raises(NotFoundError):
            service.get_request("missing")
        with pytest.raises(NotFoundError):
            service.sign("missing", "signer", SIGNATURE)


class TestVerification:
    def _complete(self, service):
        request = _sent_request(service)
        for signer in request.signers:
            service.sign(request.id, signer.id, SIGNATURE)
        return request

    def test_valid_document(self, service):
        request = self._complete(service)
        result = service.verify(request.id, DOCUMENT)
        assert result.is_valid is True
        assert result.tamper_detected is False
        assert result.signers == ["Pat Client", "Sam Owner"]

    def test_modified_document(self, service):
        request = self._complete(service)
        result = service.verify(request.id, DOCUMENT + " (revised)")
        assert result.is_valid is False
        assert result.tamper_detected is True

    def test_modified_signer_record(self, service, repo):
        request = self._complete(service)
        stored = service.get_request(request.id)
        stored.signers[0].email = "someone@else.com"
        repo.update("signature_requests", {"id": request.id}, stored.model_dump(mode="json"))

        result = service.verify(request.id, DOCUMENT)
        assert result.tamper_detected is True

    def test_incomplete_request_not_valid(self, service):
        request = _sent_request(service)
        result = service.verify(request.id, DOCUMENT)
        assert result.is_valid is False
        assert result.tamper_detected is False


class TestAuditAndReminders:
    def test_audit_trail(self, service):
        request = _sent_request(service)
        service.view(request.id, request.signers[0].id, SignerMetadata(ip_address="198.51.100.7"))
        service.view(request.id, request.signers[0].id)
        service.sign(request.id, request.signers[0].id, SIGNATURE)

        actions = [e.action for e in service.get_audit_trail(request.id)]
        assert actions == [
            SignatureAuditAction.REQUEST_CREATED,
            SignatureAuditAction.DOCUMENT_SENT,
            SignatureAuditAction.DOCUMENT_VIEWED,
            SignatureAuditAction.SIGNATURE_COMPLETED,
        ]

    def test_reminders_once_per_day_setting(self, service):
        request = _sent_request(service)
        sent = service.get_request(request.id).sent_at

        assert service.send_reminders(now=sent + timedelta(days=1)) == 0
        assert service.send_reminders(now=sent + timedelta(days=3)) == 1
        assert service.send_reminders(now=sent + timedelta(days=4)) == 0
        assert service.send_reminders(now=sent + timedelta(days=7)) == 1

        reminders = [m for m in service.outbox.messages_for("client@example.com") if m.kind == "signature_reminder"]
        assert len(reminders) == 2
        assert service.outbox.messages_for("owner@example.com") == []

    def test_reminder_days_count_from_send(self, service):
        request = service.create_request("org-1", "proposal-1", DOCUMENT, _signers())
        created = service.get_request(request.id).created_at
        sent = service.send(request.id, now=created + timedelta(days=5))
        assert sent.sent_at == created + timedelta(days=5)

        # Six days after creation is only one day after the send
        assert service.send_reminders(now=created + timedelta(days=6)) == 0
        assert service.send_reminders(now=created + timedelta(days=8)) == 1

        reminder = next(
            m for m in service.outbox.messages_for("client@example.com") if m.kind == "signature_reminder"
        )
        assert reminder.payload["days_pending"] == 3


class TestOutbox:
    def test_enqueue_is_idempotent(self, repo):
        outbox = NotificationOutbox(repo)
        first = outbox.enqueue("signature_request", "a@example.com", {}, "key-1")
        second = outbox.enqueue("signature_request", "a@example.com", {}, "key-1")
        assert first.id == second.id
        assert len(outbox.pending()) == 1

    def test_failed_delivery_does_not_touch_signature(self, service):
        request = _sent_request(service)

        def broken_sender(message):
            raise ConnectionError("SMTP down")

        counts = service.outbox.dispatch(broken_sender)
        assert counts == {"sent": 0, "failed": 1}
        message = service.outbox.pending()[0]
        assert message.attempts == 1
        assert message.last_error == "SMTP down"
        assert service.get_request(request.id).status == SignatureStatus.IN_PROGRESS

        delivered = []
        assert service.outbox.dispatch(delivered.append) == {"sent": 1, "failed": 0}
        assert delivered[0].recipient == "client@example.com"
        assert service.outbox.pending() == []

    def test_gives_up_after_max_attempts(self, repo):
        outbox = NotificationOutbox(repo, max_attempts=2)
        outbox.enqueue("signature_request", "a@example.com", {}, "key-1")

        def broken_sender(message):
            raise TimeoutError("timeout")

        outbox.dispatch(broken_sender)
        outbox.dispatch(broken_sender)
        assert outbox.pending() == []
        assert outbox.messages_for("a@example.com")[0].status == NotificationStatus.FAILED
