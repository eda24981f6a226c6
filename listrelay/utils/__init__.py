"""Utilities (logging)."""
