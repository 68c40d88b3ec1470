"""
Notification outbox — signature emails are queued here, then delivered by
dispatch().  A failed delivery is recorded on the message and retried on the
next dispatch; it never touches signature state.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from proposal_engine.exceptions import DuplicateRowError
from proposal_engine.models.enums import NotificationStatus
from proposal_engine.models.schemas import OutboxMessage
from proposal_engine.persistence.repository import Repository, get_repository

logger = logging.getLogger(__name__)

OUTBOX_TABLE = "notification_outbox"

Sender = Callable[[OutboxMessage], None]


class NotificationOutbox:
    """Idempotent message queue keyed by ``dedupe_key``."""

    def __init__(self, repository: Optional[Repository] = None, max_attempts: int = 5):
        self.repo = repository or get_repository()
        self.max_attempts = max_attempts
        self.repo.ensure_unique(OUTBOX_TABLE, ("dedupe_key",))

    def exists(self, dedupe_key: str) -> bool:
        return self.repo.fetch_one(OUTBOX_TABLE, {"dedupe_key": dedupe_key}) is not None

    def enqueue(
        self,
        kind: str,
        recipient: str,
        payload: dict[str, Any],
        dedupe_key: str,
    ) -> OutboxMessage:
        """Queue a message once; repeated calls with the same key return the original."""
        row = self.repo.fetch_one(OUTBOX_TABLE, {"dedupe_key": dedupe_key})
        if row is not None:
            return OutboxMessage.model_validate(row)

        message = OutboxMessage(kind=kind, recipient=recipient, payload=payload, dedupe_key=dedupe_key)
        try:
            self.repo.insert(OUTBOX_TABLE, message.model_dump(mode="json"))
        except DuplicateRowError:
            # Lost a race with another writer; theirs is the message
            existing = self.repo.fetch_one(OUTBOX_TABLE, {"dedupe_key": dedupe_key})
            if existing is None:
                raise
            return OutboxMessage.model_validate(existing)
        logger.debug(f"[OUTBOX] queued {kind} → {recipient}")
        return message

    def pending(self, limit: Optional[int] = None) -> list[OutboxMessage]:
        rows = self.repo.fetch_many(
            OUTBOX_TABLE,
            {"status": NotificationStatus.PENDING.value},
            order_by="created_at",
            limit=limit,
        )
        return [OutboxMessage.model_validate(r) for r in rows]

    def messages_for(self, recipient: str) -> list[OutboxMessage]:
        rows = self.repo.fetch_many(OUTBOX_TABLE, {"recipient": recipient}, order_by="created_at")
        return [OutboxMessage.model_validate(r) for r in rows]

    def dispatch(self, sender: Sender, limit: Optional[int] = None) -> dict[str, int]:
        """Deliver pending messages through ``sender``. Returns sent/failed counts."""
        counts = {"sent": 0, "failed": 0}
        for message in self.pending(limit):
            try:
                sender(message)
            except Exception as e:  # recorded on the message, retried next dispatch
                attempts = message.attempts + 1
                status = NotificationStatus.FAILED if attempts >= self.max_attempts else NotificationStatus.PENDING
                self.repo.update(OUTBOX_TABLE, {"id": message.id}, {
                    "attempts": attempts,
                    "last_error": str(e),
                    "status": status.value,
                })
                counts["failed"] += 1
                logger.warning(f"[OUTBOX] {message.kind} → {message.recipient} failed (attempt {attempts}): {e}")
                continue

            self.repo.update(OUTBOX_TABLE, {"id": message.id}, {
                "attempts": message.attempts + 1,
                "status": NotificationStatus.SENT.value,
                "sent_at": datetime.now(timezone.utc).isoformat(),
            })
            counts["sent"] += 1

        if counts["sent"] or counts["failed"]:
            logger.info(f"[OUTBOX] dispatched: {counts['sent']} sent, {counts['failed']} failed")
        return counts
