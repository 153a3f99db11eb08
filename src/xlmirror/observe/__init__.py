"""Logging, timing and file monitoring."""
