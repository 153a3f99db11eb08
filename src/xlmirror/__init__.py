"""xlmirror: row store inside .xlsx workbooks with relational mirror sync."""

__version__ = "0.1.0"
