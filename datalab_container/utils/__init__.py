"""Shared helpers (logging, Docker access)."""
