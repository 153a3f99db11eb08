"""Relational database adapters."""
