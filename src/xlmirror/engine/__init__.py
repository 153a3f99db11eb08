"""Row store engine: shared strings, cell refs, package I/O, sync."""
