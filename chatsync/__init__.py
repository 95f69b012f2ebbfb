"""Synchronization and webhook-ingestion engine for a messaging gateway."""

__version__ = "1.0.0"
