"""
Signature request transitions — pure functions over SignatureRequest.

Lifecycle:
    pending ──send──▶ in_progress ──last sign──▶ completed
       │                  │
       ├──────────────────┴──decline / cancel──▶ cancelled
       └──────────────────┴──past expires_at───▶ expired

Every function returns a TransitionResult holding a *new* request; the input
is never mutated.  Business-rule refusals come back as a SignOutcome, and
side effects (persistence, audit, notifications) are left to the caller.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel

from proposal_engine.exceptions import InvalidInputError
from proposal_engine.models.enums import (
    SignatureStatus,
    SignatureType,
    SignerStatus,
    SigningOrder,
    SignOutcome,
)
from proposal_engine.models.schemas import (
    CertificateSigner,
    SignatureCertificate,
    SignatureData,
    SignatureRequest,
    SignatureSettings,
    SignatureVerification,
    Signer,
    SignerInput,
    SignerMetadata,
)
from proposal_engine.utils.hashing import hash_payload, sha256_hash

ACTIVE_STATUSES = {SignatureStatus.PENDING, SignatureStatus.IN_PROGRESS}


class TransitionResult(BaseModel):
    request: SignatureRequest
    outcome: SignOutcome = SignOutcome.OK
    reason: str = ""
    notify_signer_ids: list[str] = []
    completed: bool = False
    changed: bool = True

    @property
    def ok(self) -> bool:
        return self.outcome == SignOutcome.OK


def _refuse(request: SignatureRequest, outcome: SignOutcome, reason: str) -> TransitionResult:
    return TransitionResult(request=request, outcome=outcome, reason=reason, changed=False)


def _inactive_reason(request: SignatureRequest, now: datetime) -> Optional[str]:
    if request.status == SignatureStatus.COMPLETED:
        return "This document has already been fully signed"
    if request.status == SignatureStatus.CANCELLED:
        return "This signature request has been cancelled"
    if request.status == SignatureStatus.EXPIRED or (request.expires_at and now > request.expires_at):
        return "This signature request has expired"
    if request.status == SignatureStatus.PENDING:
        return "This signature request has not been sent yet"
    return None


def awaiting_signers(request: SignatureRequest) -> list[Signer]:
    """Signers who may sign right now: all unsigned (parallel) or the lowest open order (sequential)."""
    unsigned = [s for s in request.signers if s.status in (SignerStatus.PENDING, SignerStatus.VIEWED)]
    if request.settings.signing_order == SigningOrder.PARALLEL or not unsigned:
        return unsigned
    lowest = min(s.order for s in unsigned)
    return [s for s in unsigned if s.order == lowest]


# ── Create ───────────────────────────────────────────────

def create_request(
    org_id: str,
    proposal_id: str,
    document_hash: str,
    signers: list[SignerInput],
    settings: Optional[SignatureSettings] = None,
    signature_type: SignatureType = SignatureType.TYPED,
    expires_at: Optional[datetime] = None,
) -> SignatureRequest:
    if not signers:
        raise InvalidInputError("A signature request needs at least one signer")
    settings = settings or SignatureSettings()
    records = [
        Signer(
            email=s.email,
            name=s.name,
            role=s.role,
            order=s.order if s.order is not None else index,
            access_code=s.access_code,
        )
        for index, s in enumerate(signers, start=1)
    ]
    if settings.require_access_code and any(not s.access_code for s in records):
        raise InvalidInputError("Every signer needs an access code for this request")
    return SignatureRequest(
        org_id=org_id,
        proposal_id=proposal_id,
        document_hash=document_hash,
        signature_type=signature_type,
        signers=records,
        settings=settings,
        expires_at=expires_at,
    )


# ── Send / view ──────────────────────────────────────────

def send(request: SignatureRequest, now: datetime) -> TransitionResult:
    """pending → in_progress; first signer group (sequential) or everyone (parallel) is notified."""
    if request.status != SignatureStatus.PENDING:
        return _refuse(request, SignOutcome.REQUEST_NOT_ACTIVE, f"Cannot send a request that is {request.status.value}")
    updated = request.model_copy(deep=True, update={"status": SignatureStatus.IN_PROGRESS, "sent_at": now})
    return TransitionResult(
        request=updated,
        notify_signer_ids=[s.id for s in awaiting_signers(updated)],
    )


def view(request: SignatureRequest, signer_id: str, now: datetime) -> TransitionResult:
    """First view marks the signer viewed; later views change nothing."""
    signer = request.signer(signer_id)
    if signer is None:
        return _refuse(request, SignOutcome.SIGNER_NOT_FOUND, "Signer not found on this request")
    if signer.status != SignerStatus.PENDING:
        return TransitionResult(request=request, changed=False)

    updated = request.model_copy(deep=True)
    target = updated.signer(signer_id)
    target.status = SignerStatus.VIEWED
    target.viewed_at = now
    return TransitionResult(request=updated)


# ── Sign / decline ───────────────────────────────────────

def sign(
    request: SignatureRequest,
    signer_id: str,
    signature_data: SignatureData,
    metadata: SignerMetadata,
    now: datetime,
) -> TransitionResult:
    signer = request.signer(signer_id)
    if signer is None:
        return _refuse(request, SignOutcome.SIGNER_NOT_FOUND, "Signer not found on this request")

    reason = _inactive_reason(request, now)
    if reason:
        return _refuse(request, SignOutcome.REQUEST_NOT_ACTIVE, reason)

    if signer.status == SignerStatus.SIGNED:
        return _refuse(request, SignOutcome.ALREADY_SIGNED, "You have already signed this document")
    if signer.status == SignerStatus.DECLINED:
        return _refuse(request, SignOutcome.REQUEST_NOT_ACTIVE, "You have declined this document")

    if request.settings.signing_order == SigningOrder.SEQUENTIAL:
        earlier = [s for s in request.signers if s.order < signer.order and s.status != SignerStatus.SIGNED]
        if earlier:
            return _refuse(
                request, SignOutcome.WAITING_FOR_PREVIOUS_SIGNERS, "Waiting for previous signers to complete"
            )

    if signer.access_code and (metadata.access_code or "").strip().upper() != signer.access_code.upper():
        return _refuse(request, SignOutcome.INVALID_ACCESS_CODE, "Invalid access code")

    updated = request.model_copy(deep=True)
    target = updated.signer(signer_id)
    target.status = SignerStatus.SIGNED
    target.signed_at = now
    target.viewed_at = target.viewed_at or now
    target.signature_data = signature_data.model_copy(update={"timestamp": signature_data.timestamp or now})
    target.ip_address = metadata.ip_address
    target.user_agent = metadata.user_agent
    target.location = metadata.location

    if all(s.status == SignerStatus.SIGNED for s in updated.signers):
        updated.status = SignatureStatus.COMPLETED
        updated.completed_at = now
        return TransitionResult(request=updated, completed=True)

    notify: list[str] = []
    if updated.settings.signing_order == SigningOrder.SEQUENTIAL:
        same_order_open = [
            s for s in updated.signers
            if s.order == target.order and s.status != SignerStatus.SIGNED
        ]
        if not same_order_open:
            notify = [s.id for s in awaiting_signers(updated)]
    return TransitionResult(request=updated, notify_signer_ids=notify)


def decline(
    request: SignatureRequest,
    signer_id: str,
    reason: str,
    now: datetime,
) -> TransitionResult:
    """A decline cancels the whole request; nobody else is notified."""
    signer = request.signer(signer_id)
    if signer is None:
        return _refuse(request, SignOutcome.SIGNER_NOT_FOUND, "Signer not found on this request")

    inactive = _inactive_reason(request, now)
    if inactive:
        return _refuse(request, SignOutcome.REQUEST_NOT_ACTIVE, inactive)
    if not request.settings.allow_decline:
        return _refuse(request, SignOutcome.DECLINE_NOT_ALLOWED, "Declining is not allowed for this document")
    if signer.status == SignerStatus.SIGNED:
        return _refuse(request, SignOutcome.ALREADY_SIGNED, "You have already signed this document")

    updated = request.model_copy(deep=True)
    updated.signer(signer_id).status = SignerStatus.DECLINED
    updated.status = SignatureStatus.CANCELLED
    updated.cancelled_reason = reason or f"Declined by {signer.name}"
    return TransitionResult(request=updated)


# ── Expire / cancel ──────────────────────────────────────

def expire(request: SignatureRequest, now: datetime) -> TransitionResult:
    if request.status not in ACTIVE_STATUSES:
        return _refuse(request, SignOutcome.REQUEST_NOT_ACTIVE, f"Request is already {request.status.value}")
    if request.expires_at is None or now <= request.expires_at:
        return TransitionResult(request=request, changed=False)
    updated = request.model_copy(deep=True, update={"status": SignatureStatus.EXPIRED})
    return TransitionResult(request=updated)


def cancel(request: SignatureRequest, reason: str) -> TransitionResult:
    if request.status not in ACTIVE_STATUSES:
        return _refuse(request, SignOutcome.REQUEST_NOT_ACTIVE, f"Request is already {request.status.value}")
    updated = request.model_copy(
        deep=True, update={"status": SignatureStatus.CANCELLED, "cancelled_reason": reason}
    )
    return TransitionResult(request=updated)


# ── Certificate & verification ───────────────────────────

def certificate_payload(request: SignatureRequest, issued_at: datetime) -> dict[str, Any]:
    """The exact content the certificate hash covers."""
    signed = sorted(
        (s for s in request.signers if s.status == SignerStatus.SIGNED),
        key=lambda s: (s.order, s.signed_at),
    )
    return {
        "request_id": request.id,
        "proposal_id": request.proposal_id,
        "document_hash": request.document_hash,
        "signers": [
            CertificateSigner(
                name=s.name,
                email=s.email,
                signed_at=s.signed_at,
                ip_address=s.ip_address or "unknown",
            ).model_dump(mode="json")
            for s in signed
        ],
        "issued_at": issued_at.isoformat(),
    }


def build_certificate(request: SignatureRequest, issued_at: datetime) -> SignatureCertificate:
    payload = certificate_payload(request, issued_at)
    return SignatureCertificate(
        request_id=request.id,
        proposal_id=request.proposal_id,
        document_hash=request.document_hash,
        signers=[CertificateSigner.model_validate(s) for s in payload["signers"]],
        certificate_hash=hash_payload(payload),
        issued_at=issued_at,
    )


def verify(
    request: SignatureRequest,
    certificate: Optional[SignatureCertificate],
    document_content: Union[str, bytes],
) -> SignatureVerification:
    """
    Valid only when the document re-hashes to the stored hash, the stored
    signer data still produces the certificate hash, and the request is completed.
    """
    document_ok = sha256_hash(document_content) == request.document_hash
    certificate_ok = True
    if certificate is not None:
        expected = hash_payload(certificate_payload(request, certificate.issued_at))
        certificate_ok = expected == certificate.certificate_hash

    tamper_detected = not document_ok or not certificate_ok
    is_valid = (
        not tamper_detected
        and certificate is not None
        and request.status == SignatureStatus.COMPLETED
    )
    return SignatureVerification(
        is_valid=is_valid,
        document_hash=request.document_hash,
        certificate_hash=certificate.certificate_hash if certificate else "",
        signed_at=request.completed_at,
        signers=[s.name for s in request.signers if s.status == SignerStatus.SIGNED],
        tamper_detected=tamper_detected,
    )
