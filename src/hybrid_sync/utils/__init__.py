"""Shared helpers for hybrid_sync."""
