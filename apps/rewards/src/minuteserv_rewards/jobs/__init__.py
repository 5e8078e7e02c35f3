"""Recurring job entrypoints for rewards maintenance."""

__all__ = ["promotions"]
