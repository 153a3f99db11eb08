"""File-level I/O helpers."""
