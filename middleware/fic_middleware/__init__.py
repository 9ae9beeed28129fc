"""Fatture in Cloud webhook ingestion and subscription lifecycle middleware."""

__version__ = "1.0.0"
