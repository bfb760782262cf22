"""Observability package: structlog configuration for the sync services."""

from __future__ import annotations

from src.leadsync.observability.logging import configure_structlog

__all__ = ["configure_structlog"]
