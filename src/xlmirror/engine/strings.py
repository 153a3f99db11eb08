"""Shared string table (``xl/sharedStrings.xml``) as an append-only pool."""

from __future__ import annotations

from io import BytesIO

from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.reader.strings import read_string_table
from openpyxl.xml.constants import SHEET_MAIN_NS, XML_NS
from openpyxl.xml.functions import Element, SubElement, fromstring, tostring

from xlmirror.contracts.errors import InputValidationError, NotFoundError

XML_HEADER = b'<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'


def check_text(text: str) -> str:
    """Return ``text`` unchanged, or raise when it holds control characters XML cannot carry."""
    found = ILLEGAL_CHARACTERS_RE.search(text)
    if found is not None:
        raise InputValidationError(
            f"Text contains a control character not allowed in a workbook: {text!r}",
            details={"value": text, "position": found.start()},
        )
    return text


class SharedStringPool:
    """Ordered distinct strings with stable indices.

    Entries are never removed or renumbered, even when no cell refers to
    them any longer.  ``references`` counts the cells pointing into the
    pool and is written as the table's ``count`` attribute.
    """

    def __init__(self, strings: list[str] | None = None, *, references: int = 0) -> None:
        self._strings: list[str] = []
        self._index: dict[str, int] = {}
        self.references = references
        self.dirty = False
        for text in strings or []:
            self._append(text)

    def _append(self, text: str) -> int:
        idx = len(self._strings)
        self._strings.append(text)
        # First occurrence wins if a foreign table holds duplicates.
        self._index.setdefault(text, idx)
        return idx

    def __len__(self) -> int:
        return len(self._strings)

    def __contains__(self, text: object) -> bool:
        return text in self._index

    def insert_or_find(self, text: str) -> int:
        """Index of ``text``, appending it when not present yet."""
        found = self._index.get(text)
        if found is not None:
            return found
        check_text(text)
        self.dirty = True
        return self._append(text)

    def lookup(self, index: int) -> str:
        if not 0 <= index < len(self._strings):
            raise NotFoundError(
                f"Shared string {index} out of range (pool size {len(self._strings)})",
                code="ERR_STRING_NOT_FOUND",
            )
        return self._strings[index]

    @classmethod
    def load(cls, xml: bytes | None) -> "SharedStringPool":
        """Build a pool from the bytes of a shared string part (``None`` for an empty pool)."""
        if not xml:
            return cls()
        strings = read_string_table(BytesIO(xml))
        count = fromstring(xml).get("count")
        return cls(strings, references=int(count) if count and count.isdigit() else len(strings))

    def to_xml(self) -> bytes:
        root = Element(
            "{%s}sst" % SHEET_MAIN_NS,
            count=str(max(self.references, 0)),
            uniqueCount=str(len(self._strings)),
        )
        for text in self._strings:
            si = SubElement(root, "{%s}si" % SHEET_MAIN_NS)
            t = SubElement(si, "{%s}t" % SHEET_MAIN_NS)
            t.text = text
            if text != text.strip():
                t.set("{%s}space" % XML_NS, "preserve")
        return XML_HEADER + tostring(root)
