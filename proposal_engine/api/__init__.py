"""
FastAPI application factory and API package.

Run with:
    uvicorn proposal_engine.api:app --reload --port 8000

Or via main.py:
    python -m proposal_engine --serve
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from proposal_engine.config import get_settings
from proposal_engine.exceptions import (
    InvalidInputError,
    InvalidTransitionError,
    NotFoundError,
    ProposalEngineError,
    QuotaExceededError,
)
from proposal_engine.api.routes import (
    ab_test_router,
    discount_router,
    health_router,
    pricing_router,
    signature_router,
    usage_router,
)

logger = logging.getLogger(__name__)

# Engine errors → HTTP status; anything else is a 500
ERROR_STATUS: list[tuple[type[ProposalEngineError], int]] = [
    (InvalidInputError, 400),
    (NotFoundError, 404),
    (QuotaExceededError, 402),
    (InvalidTransitionError, 409),
]


def _status_for(error: ProposalEngineError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


def create_app() -> FastAPI:
    """Application factory — create and configure the FastAPI instance."""
    settings = get_settings()

    application = FastAPI(
        title="Sealcoating Proposal Engine API",
        description="Pricing, discounts, quotas, e-signatures and A/B tests for proposals",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # CORS: allow the frontend (adjust origins in production)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.exception_handler(ProposalEngineError)
    async def engine_error_handler(request: Request, exc: ProposalEngineError):
        status = _status_for(exc)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=status, content=exc.to_dict())

    # Register route groups
    application.include_router(health_router, tags=["Health"])
    application.include_router(pricing_router, prefix="/api/pricing", tags=["Pricing"])
    application.include_router(discount_router, prefix="/api/discounts", tags=["Discounts"])
    application.include_router(usage_router, prefix="/api/usage", tags=["Usage"])
    application.include_router(signature_router, prefix="/api/signatures", tags=["Signatures"])
    application.include_router(ab_test_router, prefix="/api/ab-tests", tags=["A/B Tests"])

    logger.info(f"Created {settings.app_name} API (mock_mode={settings.mock_mode})")
    return application


# Module-level instance for `uvicorn proposal_engine.api:app`
app = create_app()
