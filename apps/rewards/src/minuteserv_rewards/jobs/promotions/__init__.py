"""Promotion job exports."""

from .reconciliation import run_promo_usage_reconciliation  # noqa: F401

__all__ = ["run_promo_usage_reconciliation"]
