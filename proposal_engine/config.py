"""
Application configuration using Pydantic Settings.
All environment-specific values are centralized here.
"""

from functools import lru_cache
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # ── App ──────────────────────────────────────────────
    app_name: str = "Sealcoating Proposal Engine"
    debug: bool = True
    mock_mode: bool = True  # When True, persistence is in-memory

    # ── MongoDB ──────────────────────────────────────────
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_database: str = "proposal_engine"

    # ── Pricing defaults (org settings override these) ───
    default_tax_rate: float = 0.08
    default_deposit_percent: float = 30.0

    # ── Discount approval ────────────────────────────────
    approval_threshold_percent: float = 15.0
    approval_threshold_amount: float = 500.0

    # ── Signatures ───────────────────────────────────────
    signature_expiry_days: int = 30

    # ── Billing / quotas ─────────────────────────────────
    default_plan: str = "free"

    # ── Logging ──────────────────────────────────────────
    log_level: str = "INFO"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "PROPOSAL_",
        "case_sensitive": False,
    }


@lru_cache()
def get_settings() -> Settings:
    """Return cached application settings (singleton)."""
    return Settings()
