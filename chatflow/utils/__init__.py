"""Shared helpers for chatflow."""
