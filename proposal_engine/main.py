"""
Sealcoating Proposal Engine — Main Entry Point

Price a demo proposal (CLI):
    python -m proposal_engine.main

Run as an API server (for the frontend):
    python -m proposal_engine.main --serve
    # or: uvicorn proposal_engine.api:app --reload --port 8000

Or import and run programmatically:
    from proposal_engine.main import run
    state = run()
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone

from proposal_engine.config import get_settings
from proposal_engine.models.schemas import CustomerContext
from proposal_engine.models.state import ProposalState
from proposal_engine.persistence.repository import get_repository
from proposal_engine.services.discount_service import DiscountService
from proposal_engine.services.loyalty_service import LoyaltyService
from proposal_engine.utils.logger import setup_logging


def run(org_id: str = "demo-org") -> ProposalState:
    """Build a sample proposal, resolve its discounts and log the quote."""
    settings = get_settings()
    setup_logging(settings.log_level)
    logger = logging.getLogger(__name__)

    logger.info("=" * 60)
    logger.info("  SEALCOATING PROPOSAL ENGINE")
    logger.info(
        f"  Mode: {'MOCK' if settings.mock_mode else 'LIVE'} | "
        f"Started: {datetime.now(timezone.utc).isoformat()}"
    )
    logger.info("=" * 60)

    state = ProposalState(proposal_id="demo-proposal")
    state.set_measurement("total_sqft", 10_000)
    state.set_measurement("deduction_sqft", 500)
    state.set_measurement("crack_linear_feet", 400)
    state.toggle_service("sealcoating")
    state.toggle_service("crack-filling")
    state.set_condition("fair")

    repository = get_repository()
    discounts = DiscountService(repository, loyalty_service=LoyaltyService(repository))
    ctx = CustomerContext(
        customer_id="demo-client",
        is_new_customer=True,
        selected_services=state.selected_services,
        total_sqft=state.measurements.total_sqft,
    )
    resolution = discounts.resolve_for_org(org_id, state.pricing.adjusted_subtotal, ctx)
    state.apply_resolution(resolution)

    _print_summary(state)
    for suggestion in resolution.upsell_suggestions:
        logger.info(f"  Tip: {suggestion.message} (save ~${suggestion.potential_savings:,.2f})")
    return state


def _print_summary(state: ProposalState) -> None:
    """Log a human-readable summary of the quote."""
    logger = logging.getLogger(__name__)
    pricing = state.pricing

    logger.info("")
    logger.info("-" * 60)
    logger.info("  QUOTE SUMMARY")
    logger.info("-" * 60)
    logger.info(f"  Proposal:       {state.proposal_id}")
    logger.info(f"  Tier:           {state.tier.value}")
    logger.info(f"  Condition:      {state.surface_condition.value}")
    for item in pricing.line_items:
        logger.info(
            f"    {item.name:<20} {item.quantity:>10,.0f} {item.unit:<6} "
            f"@ ${item.unit_price:,.2f} = ${item.total:,.2f}"
        )
    logger.info(f"  Subtotal:       ${pricing.subtotal:,.2f}")
    logger.info(f"  Adjusted:       ${pricing.adjusted_subtotal:,.2f}")
    logger.info(f"  Discounts:      ${pricing.discount_amount:,.2f}")
    logger.info(f"  Tax:            ${pricing.tax_amount:,.2f}")
    logger.info(f"  Total:          ${pricing.total:,.2f}")
    logger.info(f"  Deposit:        ${pricing.deposit_amount:,.2f}")
    logger.info(
        f"  Tiers:          economy ${pricing.tier_pricing.economy:,.2f} | "
        f"standard ${pricing.tier_pricing.standard:,.2f} | "
        f"premium ${pricing.tier_pricing.premium:,.2f}"
    )
    logger.info("-" * 60)


def serve(host: str = "0.0.0.0", port: int = 8000) -> None:
    """Start the FastAPI server (for frontend communication)."""
    import uvicorn

    setup_logging(get_settings().log_level)
    logger = logging.getLogger(__name__)
    logger.info(f"Starting API server on {host}:{port}")
    uvicorn.run("proposal_engine.api:app", host=host, port=port, reload=True)


def main() -> None:
    """Console entry point: ``proposal-engine [org_id] [--serve]``."""
    if "--serve" in sys.argv:
        serve()
    else:
        args = [a for a in sys.argv[1:] if not a.startswith("--")]
        run(args[0] if args else "demo-org")


if __name__ == "__main__":
    main()
