"""Ingestion engine services."""
