"""
Approval Rules — decides whether an applied discount needs manager sign-off.
Config loaded from MongoDB via RulesConfigStore.
"""

from __future__ import annotations

import logging
from typing import Optional

from proposal_engine.models.schemas import ApprovalCheck
from proposal_engine.rules.rules_config import ApprovalConfig

logger = logging.getLogger(__name__)


def _pct(value: float) -> str:
    return f"{round(value, 2):g}"


def check_approval_required(
    config: ApprovalConfig,
    discount_percent: float,
    discount_amount: float,
    order_total: float,
    user_role: Optional[str] = None,
) -> ApprovalCheck:
    """
    Role limits are checked first, then the org-wide thresholds.
    Returns the first reason that applies.
    """
    if not config.require_approval or discount_amount <= 0:
        return ApprovalCheck(required=False)

    # ── Role limits ──────────────────────────────────────
    role_limit = config.role_limits.get(user_role or "")
    if role_limit:
        if discount_percent > role_limit.max_percent:
            return ApprovalCheck(
                required=True,
                reason=(
                    f"Discount of {_pct(discount_percent)}% exceeds your limit of "
                    f"{_pct(role_limit.max_percent)}%"
                ),
            )
        if role_limit.max_amount is not None and discount_amount > role_limit.max_amount:
            return ApprovalCheck(
                required=True,
                reason=(
                    f"Discount of ${discount_amount:,.2f} exceeds your limit of "
                    f"${role_limit.max_amount:,.2f}"
                ),
            )

    # ── Org thresholds ───────────────────────────────────
    if discount_percent > config.approval_threshold_percent:
        return ApprovalCheck(
            required=True,
            reason=(
                f"Discount of {_pct(discount_percent)}% exceeds threshold of "
                f"{_pct(config.approval_threshold_percent)}%"
            ),
        )

    if discount_amount > config.approval_threshold_amount:
        return ApprovalCheck(
            required=True,
            reason=(
                f"Discount of ${discount_amount:,.2f} exceeds threshold of "
                f"${config.approval_threshold_amount:,.2f}"
            ),
        )

    if config.approval_for_orders_over and order_total > config.approval_for_orders_over:
        return ApprovalCheck(
            required=True,
            reason=(
                f"Order total of ${order_total:,.2f} exceeds threshold for "
                f"automatic discount approval"
            ),
        )

    return ApprovalCheck(required=False)
