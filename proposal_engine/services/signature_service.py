"""
Signature Service — persists signature requests and runs their side effects.

State changes come from workflows.signature_transitions; this service loads
the request, applies the transition, saves the result, writes the audit
trail and queues notifications in the outbox.
"""

from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from proposal_engine.config import get_settings
from proposal_engine.exceptions import InvalidTransitionError, NotFoundError
from proposal_engine.models.enums import (
    SignatureAuditAction,
    SignatureStatus,
    SignatureType,
)
from proposal_engine.models.schemas import (
    SignatureAuditEntry,
    SignatureCertificate,
    SignatureData,
    SignatureRequest,
    SignatureSettings,
    SignatureVerification,
    SignerInput,
    SignerMetadata,
    SignResult,
)
from proposal_engine.persistence.repository import Repository, get_repository
from proposal_engine.services.audit_service import AuditService
from proposal_engine.services.notification_service import NotificationOutbox
from proposal_engine.utils.hashing import sha256_hash
from proposal_engine.workflows import signature_transitions as transitions

logger = logging.getLogger(__name__)

REQUEST_TABLE = "signature_requests"
CERTIFICATE_TABLE = "signature_certificates"

ACCESS_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_access_code(length: int = 6) -> str:
    return "".join(secrets.choice(ACCESS_CODE_ALPHABET) for _ in range(length))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SignatureService:
    """Signature requests for proposals: create, send, sign, verify."""

    def __init__(
        self,
        repository: Optional[Repository] = None,
        outbox: Optional[NotificationOutbox] = None,
        audit: Optional[AuditService] = None,
    ):
        self.repo = repository or get_repository()
        self.outbox = outbox or NotificationOutbox(self.repo)
        self.audit = audit or AuditService(self.repo)
        self.repo.ensure_unique(CERTIFICATE_TABLE, ("request_id",))

    # ── Storage ──────────────────────────────────────────

    def get_request(self, request_id: str) -> SignatureRequest:
        row = self.repo.fetch_one(REQUEST_TABLE, {"id": request_id})
        if row is None:
            raise NotFoundError("Signature request", request_id)
        return SignatureRequest.model_validate(row)

    def _save(self, request: SignatureRequest) -> None:
        self.repo.update(REQUEST_TABLE, {"id": request.id}, request.model_dump(mode="json"))

    def _notify(self, request: SignatureRequest, signer_ids: list[str], kind: str) -> None:
        for signer_id in signer_ids:
            signer = request.signer(signer_id)
            self.outbox.enqueue(
                kind=kind,
                recipient=signer.email,
                payload={
                    "request_id": request.id,
                    "proposal_id": request.proposal_id,
                    "signer_id": signer.id,
                    "signer_name": signer.name,
                    "custom_message": request.settings.custom_message,
                },
                dedupe_key=f"{request.id}:{signer.id}:{kind}",
            )

    # ── Lifecycle ────────────────────────────────────────

    def create_request(
        self,
        org_id: str,
        proposal_id: str,
        document_content: Union[str, bytes],
        signers: list[SignerInput],
        settings: Optional[SignatureSettings] = None,
        signature_type: SignatureType = SignatureType.TYPED,
        expires_in_days: Optional[int] = None,
        created_by: str = "system",
    ) -> SignatureRequest:
        """Hash the document and store a pending request; access codes are generated when required."""
        settings = settings or SignatureSettings()
        if settings.require_access_code:
            signers = [
                s if s.access_code else s.model_copy(update={"access_code": generate_access_code()})
                for s in signers
            ]
        days = expires_in_days if expires_in_days is not None else get_settings().signature_expiry_days

        request = transitions.create_request(
            org_id=org_id,
            proposal_id=proposal_id,
            document_hash=sha256_hash(document_content),
            signers=signers,
            settings=settings,
            signature_type=signature_type,
            expires_at=_utcnow() + timedelta(days=days),
        )
        self.repo.insert(REQUEST_TABLE, request.model_dump(mode="json"))
        self.audit.record(
            request.id,
            SignatureAuditAction.REQUEST_CREATED,
            created_by,
            {"proposal_id": proposal_id, "signers": len(request.signers)},
        )
        logger.info(f"Signature request {request.id} created for proposal {proposal_id}")
        return request

    def send(self, request_id: str, sent_by: str = "system", now: Optional[datetime] = None) -> SignatureRequest:
        request = self.get_request(request_id)
        result = transitions.send(request, now or _utcnow())
        if not result.ok:
            raise InvalidTransitionError("signature request", request.status.value, SignatureStatus.IN_PROGRESS.value)

        self._save(result.request)
        self.audit.record(
            request_id, SignatureAuditAction.DOCUMENT_SENT, sent_by, {"notified": result.notify_signer_ids}
        )
        self._notify(result.request, result.notify_signer_ids, "signature_request")
        logger.info(f"Signature request {request_id} sent to {len(result.notify_signer_ids)} signer(s)")
        return result.request

    def view(
        self,
        request_id: str,
        signer_id: str,
        metadata: Optional[SignerMetadata] = None,
        now: Optional[datetime] = None,
    ) -> SignResult:
        request = self.get_request(request_id)
        metadata = metadata or SignerMetadata()
        result = transitions.view(request, signer_id, now or _utcnow())
        if not result.ok:
            return SignResult(success=False, outcome=result.outcome, reason=result.reason, status=request.status)

        if result.changed:
            self._save(result.request)
            self.audit.record(
                request_id,
                SignatureAuditAction.DOCUMENT_VIEWED,
                result.request.signer(signer_id).email,
                ip_address=metadata.ip_address,
                user_agent=metadata.user_agent,
            )
        return SignResult(success=True, status=result.request.status)

    def sign(
        self,
        request_id: str,
        signer_id: str,
        signature_data: SignatureData,
        metadata: Optional[SignerMetadata] = None,
        now: Optional[datetime] = None,
    ) -> SignResult:
        """Record a signature. Refusals come back as ``success=False`` with an outcome."""
        request = self.get_request(request_id)
        metadata = metadata or SignerMetadata()
        now = now or _utcnow()

        result = transitions.sign(request, signer_id, signature_data, metadata, now)
        if not result.ok:
            logger.info(f"Sign refused on {request_id} for signer {signer_id}: {result.outcome.value}")
            return SignResult(success=False, outcome=result.outcome, reason=result.reason, status=request.status)

        updated = result.request
        signer = updated.signer(signer_id)
        self._save(updated)
        self.audit.record(
            request_id,
            SignatureAuditAction.SIGNATURE_COMPLETED,
            signer.email,
            {"signer_id": signer_id, "signature_type": signature_data.type.value},
            ip_address=metadata.ip_address,
            user_agent=metadata.user_agent,
            performed_at=now,
        )

        certificate: Optional[SignatureCertificate] = None
        if result.completed:
            certificate = transitions.build_certificate(updated, issued_at=now)
            self.repo.insert(CERTIFICATE_TABLE, certificate.model_dump(mode="json"))
            self._notify(updated, [s.id for s in updated.signers], "signature_completed")
            logger.info(f"Signature request {request_id} completed; certificate {certificate.id} issued")
        else:
            self._notify(updated, result.notify_signer_ids, "signature_request")

        return SignResult(
            success=True,
            all_signed=result.completed,
            status=updated.status,
            certificate=certificate,
        )

    def decline(
        self,
        request_id: str,
        signer_id: str,
        reason: str = "",
        metadata: Optional[SignerMetadata] = None,
        now: Optional[datetime] = None,
    ) -> SignResult:
        request = self.get_request(request_id)
        metadata = metadata or SignerMetadata()
        result = transitions.decline(request, signer_id, reason, now or _utcnow())
        if not result.ok:
            return SignResult(success=False, outcome=result.outcome, reason=result.reason, status=request.status)

        self._save(result.request)
        self.audit.record(
            request_id,
            SignatureAuditAction.SIGNATURE_DECLINED,
            result.request.signer(signer_id).email,
            {"reason": result.request.cancelled_reason},
            ip_address=metadata.ip_address,
            user_agent=metadata.user_agent,
        )
        logger.info(f"Signature request {request_id} declined by signer {signer_id}")
        return SignResult(success=True, status=result.request.status)

    def cancel(self, request_id: str, reason: str, cancelled_by: str = "system") -> SignatureRequest:
        request = self.get_request(request_id)
        result = transitions.cancel(request, reason)
        if not result.ok:
            raise InvalidTransitionError("signature request", request.status.value, SignatureStatus.CANCELLED.value)
        self._save(result.request)
        self.audit.record(request_id, SignatureAuditAction.REQUEST_CANCELLED, cancelled_by, {"reason": reason})
        logger.info(f"Signature request {request_id} cancelled: {reason}")
        return result.request

    # ── Batch jobs ───────────────────────────────────────

    def _active_requests(self) -> list[SignatureRequest]:
        rows = self.repo.fetch_many(
            REQUEST_TABLE,
            {"status": {"$in": [SignatureStatus.PENDING.value, SignatureStatus.IN_PROGRESS.value]}},
        )
        return [SignatureRequest.model_validate(r) for r in rows]

    def process_expired_requests(self, now: Optional[datetime] = None) -> list[str]:
        """Expire every open request past its deadline. Returns the expired ids."""
        now = now or _utcnow()
        expired: list[str] = []
        for request in self._active_requests():
            result = transitions.expire(request, now)
            if result.ok and result.changed:
                self._save(result.request)
                self.audit.record(request.id, SignatureAuditAction.REQUEST_EXPIRED, "system")
                expired.append(request.id)
        if expired:
            logger.info(f"Expired {len(expired)} signature request(s)")
        return expired

    def send_reminders(self, now: Optional[datetime] = None) -> int:
        """
        Queue reminders for signers whose turn it is, once per configured
        reminder day.  Returns how many new reminders were queued.
        """
        now = now or _utcnow()
        queued = 0
        for request in self._active_requests():
            if request.status != SignatureStatus.IN_PROGRESS:
                continue
            # Requests stored before sent_at was recorded count from creation
            elapsed_days = (now - (request.sent_at or request.created_at)).days
            due = [d for d in request.settings.reminder_days if elapsed_days >= d]
            if not due:
                continue
            day = max(due)
            for signer in transitions.awaiting_signers(request):
                key = f"{request.id}:{signer.id}:signature_reminder:{day}"
                if self.outbox.exists(key):
                    continue
                self.outbox.enqueue(
                    kind="signature_reminder",
                    recipient=signer.email,
                    payload={"request_id": request.id, "signer_id": signer.id, "days_pending": elapsed_days},
                    dedupe_key=key,
                )
                self.audit.record(
                    request.id, SignatureAuditAction.REMINDER_SENT, "system", {"signer_id": signer.id, "day": day}
                )
                queued += 1
        return queued

    # ── Verification ─────────────────────────────────────

    def get_certificate(self, request_id: str) -> Optional[SignatureCertificate]:
        row = self.repo.fetch_one(CERTIFICATE_TABLE, {"request_id": request_id})
        return SignatureCertificate.model_validate(row) if row else None

    def verify(self, request_id: str, document_content: Union[str, bytes]) -> SignatureVerification:
        request = self.get_request(request_id)
        result = transitions.verify(request, self.get_certificate(request_id), document_content)
        if result.tamper_detected:
            logger.warning(f"Tamper detected on signature request {request_id}")
        return result

    def get_audit_trail(self, request_id: str) -> list[SignatureAuditEntry]:
        self.get_request(request_id)
        return self.audit.get_trail(request_id)


