"""Sealcoating Proposal Engine — pricing, discounts, quotas, e-signatures and A/B tests."""

__version__ = "0.1.0"
