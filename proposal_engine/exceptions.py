"""
Exception taxonomy for the proposal engine.

Only fatal conditions are raised: bad input, missing rows, illegal lifecycle
transitions and hard quota enforcement.  Business-rule rejections (discount
not applicable, signing out of order, ...) are returned as result objects.
"""

from __future__ import annotations

from typing import Any, Optional


class ProposalEngineError(Exception):
    """Base exception for all engine errors.

    Attributes:
        message: Human-readable error description
        context: Extra details (ids, offending values) for logs and API payloads
    """

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
        }


class InvalidInputError(ProposalEngineError, ValueError):
    """Input rejected before any computation (range, shape, date window)."""


class NotFoundError(ProposalEngineError, LookupError):
    """A referenced proposal, request, test or code does not exist."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found: {entity_id}", {"entity": entity, "id": entity_id})
        self.entity = entity
        self.entity_id = entity_id


class QuotaExceededError(ProposalEngineError):
    """Raised by ``enforce_quota`` when the plan limit would be exceeded."""

    def __init__(self, message: str, upgrade_message: Optional[str] = None):
        super().__init__(message, {"upgrade": upgrade_message})
        self.upgrade_message = upgrade_message


class InvalidTransitionError(ProposalEngineError):
    """A lifecycle change that the current status does not allow."""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            f"Cannot move {entity} from '{current}' to '{target}'",
            {"entity": entity, "current": current, "target": target},
        )


class DuplicateRowError(ProposalEngineError):
    """Insert violated a unique index."""


class AtomicIncrementUnavailable(ProposalEngineError):
    """The backing store has no atomic increment; callers fall back to read-then-write."""
