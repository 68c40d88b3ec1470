"""
Audit Service — dedicated service for recording and querying audit trails.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from proposal_engine.models.enums import SignatureAuditAction
from proposal_engine.models.schemas import SignatureAuditEntry
from proposal_engine.persistence.repository import Repository, get_repository

logger = logging.getLogger(__name__)

AUDIT_TABLE = "signature_audit_log"


class AuditService:
    """
    Records signature request actions (created, viewed, signed, ...).
    Entries are append-only rows in the repository.
    """

    def __init__(self, repository: Optional[Repository] = None):
        self.repo = repository or get_repository()

    def record(
        self,
        request_id: str,
        action: SignatureAuditAction,
        performed_by: str,
        details: Optional[dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        performed_at: Optional[datetime] = None,
    ) -> SignatureAuditEntry:
        """Record an audit entry and return it."""
        entry = SignatureAuditEntry(
            request_id=request_id,
            action=action,
            performed_by=performed_by,
            performed_at=performed_at or datetime.now(timezone.utc),
            ip_address=ip_address,
            user_agent=user_agent,
            details=details or {},
        )
        self.repo.insert(AUDIT_TABLE, entry.model_dump(mode="json"))
        logger.debug(f"[AUDIT] {performed_by} → {entry.action.value} on {request_id}")
        return entry

    def get_trail(self, request_id: str) -> list[SignatureAuditEntry]:
        """Return all audit entries for a request, oldest first."""
        rows = self.repo.fetch_many(AUDIT_TABLE, {"request_id": request_id}, order_by="performed_at")
        return [SignatureAuditEntry.model_validate(r) for r in rows]
