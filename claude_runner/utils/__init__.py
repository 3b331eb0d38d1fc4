"""Shared helpers: subprocess execution, CLI detection and logging."""
