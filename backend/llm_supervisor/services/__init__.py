"""Supervisor services."""
