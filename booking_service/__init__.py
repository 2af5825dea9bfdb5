"""Desti booking service: booking orchestration and payment reconciliation."""

__version__ = "1.0.0"
