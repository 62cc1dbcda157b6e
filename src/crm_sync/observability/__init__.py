"""Observability package for structured logging and Prometheus metrics.

Provides:
- configure_structlog: Install structlog processors for the current environment
- metrics: Counters and histograms for CRM API calls, retries, and sync runs
"""

from __future__ import annotations

from src.crm_sync.observability.logging import configure_structlog

__all__ = [
    "configure_structlog",
]
