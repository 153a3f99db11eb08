"""WorkbookPackage: an .xlsx package edited at the XML part level.

openpyxl rewrites every part it loads and stores text as inline strings, so
the row store works on the raw package instead: parts are read from the zip
into memory, the worksheet and relationship parts that an operation touches
are parsed with openpyxl's XML helpers, and the whole package is written
back atomically.  openpyxl is still used to create new packages and for its
constants, reference helpers and shared string reader.
"""

from __future__ import annotations

import posixpath
import zipfile
import zlib
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Any

from openpyxl.packaging.relationship import get_rels_path
from openpyxl.workbook import Workbook
from openpyxl.workbook.child import INVALID_TITLE_REGEX
from openpyxl.xml.constants import (
    ARC_CONTENT_TYPES,
    ARC_ROOT_RELS,
    ARC_SHARED_STRINGS,
    ARC_WORKBOOK,
    CONTYPES_NS,
    PACKAGE_WORKSHEETS,
    PKG_REL_NS,
    REL_NS,
    SHARED_STRINGS,
    SHEET_MAIN_NS,
    WORKSHEET_TYPE,
)
from openpyxl.xml.functions import Element, SubElement, fromstring, tostring

from xlmirror.contracts.errors import (
    AccessError,
    FormatError,
    InputValidationError,
    NotFoundError,
)
from xlmirror.contracts.results import SheetRow
from xlmirror.engine.cells import column_letters, parse_reference, to_reference
from xlmirror.engine.strings import XML_HEADER, SharedStringPool
from xlmirror.io.fileops import atomic_write

MAIN = "{%s}" % SHEET_MAIN_NS
PKG_REL = "{%s}" % PKG_REL_NS
CT = "{%s}" % CONTYPES_NS
R_ID = "{%s}id" % REL_NS
WORKSHEET_REL = REL_NS + "/worksheet"
SHARED_STRINGS_REL = REL_NS + "/sharedStrings"
OFFICE_DOCUMENT_REL = REL_NS + "/officeDocument"

MAX_SHEET_NAME = 31

EMPTY_WORKSHEET = (
    XML_HEADER
    + b'<worksheet xmlns="' + SHEET_MAIN_NS.encode() + b'">'
    b'<dimension ref="A1"/><sheetData/>'
    b'<pageMargins left="0.75" right="0.75" top="1" bottom="1" header="0.5" footer="0.5"/>'
    b"</worksheet>"
)

_ZIP_ERRORS = (zipfile.BadZipFile, zipfile.LargeZipFile, zlib.error, EOFError)
_XML_ERRORS = (SyntaxError, ValueError)


def validate_sheet_name(name: str) -> str:
    """Reject names Excel would refuse; returns the name unchanged."""
    if not name or not name.strip():
        raise InputValidationError("Sheet name must not be empty")
    if len(name) > MAX_SHEET_NAME:
        raise InputValidationError(
            f"Sheet name longer than {MAX_SHEET_NAME} characters: {name!r}",
            details={"sheet": name},
        )
    if INVALID_TITLE_REGEX.search(name):
        raise InputValidationError(
            f"Sheet name contains a character not allowed in sheet names: {name!r}",
            details={"sheet": name},
        )
    return name


def _resolve(base_dir: str, target: str) -> str:
    """Turn a relationship target (absolute or relative to ``base_dir``) into a zip member name."""
    if target.startswith("/"):
        return target[1:]
    return posixpath.normpath(posixpath.join(base_dir, target))


@dataclass
class SheetEntry:
    name: str
    sheet_id: int
    rel_id: str
    part: str


class SheetGrid:
    """The ``<sheetData>`` grid of one worksheet part.

    Rows are addressed by their ``r`` attribute; cells are positioned by
    their reference so gaps read back as empty strings.  Every value written
    goes through the shared string pool.  The ``<dimension>`` end row doubles
    as a high-water mark of the largest row index ever written, so deleted
    indices are not handed out again.
    """

    def __init__(self, root: Any, pool: SharedStringPool, *, name: str = "") -> None:
        self.root = root
        self.pool = pool
        self.name = name
        data = root.find(MAIN + "sheetData")
        if data is None:
            raise FormatError(f"Sheet '{name}' has no sheetData element", details={"sheet": name})
        self._data = data
        self.high_water = self._read_high_water()
        self.modified = False

    # -- reading ----------------------------------------------------------

    def _read_high_water(self) -> int:
        dim = self.root.find(MAIN + "dimension")
        ref = dim.get("ref", "") if dim is not None else ""
        # A bare "A1" is what Excel writes for an empty sheet
        if ":" not in ref:
            return 0
        try:
            return parse_reference(ref.split(":", 1)[1])[1]
        except InputValidationError:
            return 0

    def _rows(self) -> list[tuple[int, Any]]:
        rows: list[tuple[int, Any]] = []
        previous = 0
        for el in self._data.findall(MAIN + "row"):
            r = el.get("r")
            try:
                index = int(r) if r is not None else previous + 1
            except ValueError as exc:
                raise FormatError(
                    f"Sheet '{self.name}' has a row with invalid index {r!r}",
                    details={"sheet": self.name},
                ) from exc
            rows.append((index, el))
            previous = index
        return rows

    def _find(self, index: int) -> Any | None:
        for idx, el in self._rows():
            if idx == index:
                return el
        return None

    def _cell_text(self, cell: Any) -> str:
        kind = cell.get("t", "n")
        if kind == "inlineStr":
            inline = cell.find(MAIN + "is")
            if inline is None:
                return ""
            t = inline.find(MAIN + "t")
            if t is not None:
                return t.text or ""
            return "".join(run.text or "" for run in inline.findall(f"{MAIN}r/{MAIN}t"))
        v = cell.find(MAIN + "v")
        if v is None or v.text is None:
            return ""
        if kind == "s":
            try:
                return self.pool.lookup(int(v.text))
            except (ValueError, NotFoundError) as exc:
                raise FormatError(
                    f"Sheet '{self.name}' refers to a missing shared string {v.text!r}",
                    details={"sheet": self.name},
                ) from exc
        return v.text

    def _column(self, cell: Any, previous: int) -> int:
        ref = cell.get("r")
        if not ref:
            return previous + 1
        try:
            return parse_reference(ref)[0]
        except InputValidationError as exc:
            raise FormatError(
                f"Sheet '{self.name}' has an invalid cell reference {ref!r}",
                details={"sheet": self.name},
            ) from exc

    def _row_values(self, row: Any) -> list[str]:
        placed: dict[int, str] = {}
        col = -1
        for cell in row.findall(MAIN + "c"):
            col = self._column(cell, col)
            placed[col] = self._cell_text(cell)
        if not placed:
            return []
        width = max(placed) + 1
        return [placed.get(i, "") for i in range(width)]

    def row_indices(self) -> list[int]:
        return [idx for idx, _ in self._rows()]

    def get(self, index: int) -> list[str] | None:
        el = self._find(index)
        return None if el is None else self._row_values(el)

    def rows(self) -> list[SheetRow]:
        return [SheetRow(index=idx, values=self._row_values(el)) for idx, el in self._rows()]

    def next_index(self) -> int:
        return max([self.high_water, *self.row_indices()], default=0) + 1

    # -- writing ----------------------------------------------------------

    def _drop_cells(self, row: Any) -> None:
        for cell in row.findall(MAIN + "c"):
            if cell.get("t") == "s":
                self.pool.references -= 1
            row.remove(cell)

    def _fill(self, row: Any, index: int, values: list[str]) -> None:
        for col, text in enumerate(values):
            cell = SubElement(row, MAIN + "c", r=to_reference(col, index), t="s")
            v = SubElement(cell, MAIN + "v")
            v.text = str(self.pool.insert_or_find(text))
        self.pool.references += len(values)

    def set_row(self, index: int, values: list[str]) -> None:
        """Create or overwrite row ``index`` with ``values`` starting at column A."""
        existing = self._find(index)
        if existing is not None:
            self._drop_cells(existing)
            existing.attrib.pop("spans", None)
            self._fill(existing, index, values)
        else:
            row = Element(MAIN + "row", r=str(index))
            self._fill(row, index, values)
            position = len(self._data)
            for pos, child in enumerate(list(self._data)):
                r = child.get("r")
                if r is not None and r.isdigit() and int(r) > index:
                    position = pos
                    break
            self._data.insert(position, row)
        self.high_water = max(self.high_water, index)
        self.modified = True

    def remove_row(self, index: int) -> bool:
        el = self._find(index)
        if el is None:
            return False
        self._drop_cells(el)
        self._data.remove(el)
        self.modified = True
        return True

    def shift_down(self, by: int = 1) -> None:
        """Move every row (and its cell references) down by ``by`` rows."""
        for index, el in reversed(self._rows()):
            new_index = index + by
            el.set("r", str(new_index))
            col = -1
            for cell in el.findall(MAIN + "c"):
                col = self._column(cell, col)
                cell.set("r", to_reference(col, new_index))
        if self.high_water:
            self.high_water += by
        self.modified = True

    def finish(self) -> None:
        """Refresh ``<dimension>`` so it records the high-water mark."""
        top = max([self.high_water, *self.row_indices()], default=0)
        dim = self.root.find(MAIN + "dimension")
        if dim is None:
            dim = Element(MAIN + "dimension")
            pos = 1 if len(self.root) and self.root[0].tag == MAIN + "sheetPr" else 0
            self.root.insert(pos, dim)
        if top == 0:
            dim.set("ref", "A1")
            return
        width = max((len(self._row_values(el)) for _, el in self._rows()), default=1)
        dim.set("ref", f"A1:{column_letters(max(width, 1) - 1)}{top}")


class WorkbookPackage:
    """An .xlsx package held in memory as raw zip members."""

    @classmethod
    def create(cls, path: str | Path, sheet: str) -> "WorkbookPackage":
        """Create a new single-sheet package at ``path`` with openpyxl."""
        validate_sheet_name(sheet)
        wb = Workbook()
        wb.active.title = sheet
        buf = BytesIO()
        wb.save(buf)
        wb.close()
        pkg = cls(Path(path), cls._read_members(buf, Path(path)))
        # openpyxl writes "A1:A1" for an empty sheet, which would read as a used row 1
        grid = pkg.grid(pkg.sheets()[0])
        grid.high_water = 0
        grid.modified = True
        pkg.save()
        return pkg

    @classmethod
    def open(cls, path: str | Path) -> "WorkbookPackage":
        p = Path(path)
        if not p.exists():
            raise NotFoundError(
                f"Workbook not found: {p}",
                code="ERR_WORKBOOK_NOT_FOUND",
                details={"file": str(p)},
            )
        try:
            members = cls._read_members(p, p)
        except PermissionError as exc:
            raise AccessError(f"Cannot read workbook {p}: {exc}", details={"file": str(p)}) from exc
        except OSError as exc:
            raise AccessError(f"Cannot open workbook {p}: {exc}", details={"file": str(p)}) from exc
        pkg = cls(p, members)
        pkg.sheets()
        return pkg

    @staticmethod
    def _read_members(source: Any, path: Path) -> dict[str, bytes]:
        try:
            with zipfile.ZipFile(source) as archive:
                return {name: archive.read(name) for name in archive.namelist()}
        except _ZIP_ERRORS as exc:
            raise FormatError(
                f"Not a valid xlsx package: {path}: {exc}",
                details={"file": str(path)},
            ) from exc

    def __init__(self, path: Path, parts: dict[str, bytes]) -> None:
        self.path = path
        self._parts = parts
        self._trees: dict[str, Any] = {}
        self._changed: set[str] = set()
        self._grids: dict[str, SheetGrid] = {}
        self._strings: SharedStringPool | None = None

    # -- parts ------------------------------------------------------------

    def _tree(self, name: str) -> Any:
        if name not in self._trees:
            try:
                data = self._parts[name]
            except KeyError as exc:
                raise FormatError(
                    f"Package part missing: {name}",
                    details={"file": str(self.path), "part": name},
                ) from exc
            try:
                self._trees[name] = fromstring(data)
            except _XML_ERRORS as exc:
                raise FormatError(
                    f"Malformed XML in {name}: {exc}",
                    details={"file": str(self.path), "part": name},
                ) from exc
        return self._trees[name]

    def _touch(self, name: str) -> None:
        self._changed.add(name)

    @property
    def workbook_part(self) -> str:
        if ARC_ROOT_RELS in self._parts:
            for rel in self._tree(ARC_ROOT_RELS).findall(PKG_REL + "Relationship"):
                if rel.get("Type") == OFFICE_DOCUMENT_REL:
                    return _resolve("", rel.get("Target", ARC_WORKBOOK))
        return ARC_WORKBOOK

    @property
    def rels_part(self) -> str:
        return get_rels_path(self.workbook_part)

    def _relationships(self) -> list[Any]:
        return self._tree(self.rels_part).findall(PKG_REL + "Relationship")

    def _add_relationship(self, rel_type: str, part: str) -> str:
        rels = self._tree(self.rels_part)
        existing = self._relationships()
        taken = {rel.get("Id") for rel in existing}
        n = len(existing) + 1
        while f"rId{n}" in taken:
            n += 1
        rel_id = f"rId{n}"
        # Keep the target style already used by the package
        absolute = any(rel.get("Target", "").startswith("/") for rel in existing)
        base_dir = posixpath.dirname(self.workbook_part)
        target = "/" + part if absolute else posixpath.relpath(part, base_dir or ".")
        SubElement(rels, PKG_REL + "Relationship", Id=rel_id, Type=rel_type, Target=target)
        self._touch(self.rels_part)
        return rel_id

    def _add_override(self, part_name: str, content_type: str) -> None:
        types = self._tree(ARC_CONTENT_TYPES)
        for el in types.findall(CT + "Override"):
            if el.get("PartName") == part_name:
                return
        SubElement(types, CT + "Override", PartName=part_name, ContentType=content_type)
        self._touch(ARC_CONTENT_TYPES)

    # -- sheets -----------------------------------------------------------

    def sheets(self) -> list[SheetEntry]:
        wb = self._tree(self.workbook_part)
        sheets_el = wb.find(MAIN + "sheets")
        if sheets_el is None:
            raise FormatError("Workbook part has no <sheets> element", details={"file": str(self.path)})
        base_dir = posixpath.dirname(self.workbook_part)
        targets = {rel.get("Id"): rel.get("Target") for rel in self._relationships()}
        entries: list[SheetEntry] = []
        for el in sheets_el.findall(MAIN + "sheet"):
            name = el.get("name", "")
            rel_id = el.get(R_ID)
            target = targets.get(rel_id)
            if target is None:
                raise FormatError(
                    f"Sheet '{name}' has no relationship {rel_id!r}",
                    details={"file": str(self.path), "sheet": name},
                )
            try:
                sheet_id = int(el.get("sheetId", "0"))
            except ValueError as exc:
                raise FormatError(f"Sheet '{name}' has an invalid sheetId", details={"sheet": name}) from exc
            entries.append(SheetEntry(name=name, sheet_id=sheet_id, rel_id=rel_id, part=_resolve(base_dir, target)))
        return entries

    def sheet_names(self) -> list[str]:
        return [entry.name for entry in self.sheets()]

    def find_sheet(self, name: str) -> SheetEntry | None:
        wanted = name.casefold()
        for entry in self.sheets():
            if entry.name.casefold() == wanted:
                return entry
        return None

    def add_sheet(self, name: str) -> SheetEntry:
        """Append an empty worksheet part and register it in the workbook."""
        validate_sheet_name(name)
        if self.find_sheet(name) is not None:
            raise InputValidationError(f"Sheet already exists: {name}", details={"sheet": name})
        entries = self.sheets()
        n = 1
        while f"{PACKAGE_WORKSHEETS}/sheet{n}.xml" in self._parts:
            n += 1
        part = f"{PACKAGE_WORKSHEETS}/sheet{n}.xml"
        self._parts[part] = EMPTY_WORKSHEET
        rel_id = self._add_relationship(WORKSHEET_REL, part)
        sheet_id = max((e.sheet_id for e in entries), default=0) + 1
        sheets_el = self._tree(self.workbook_part).find(MAIN + "sheets")
        SubElement(sheets_el, MAIN + "sheet", {"name": name, "sheetId": str(sheet_id), R_ID: rel_id})
        self._touch(self.workbook_part)
        self._add_override("/" + part, WORKSHEET_TYPE)
        return SheetEntry(name=name, sheet_id=sheet_id, rel_id=rel_id, part=part)

    def grid(self, entry: SheetEntry) -> SheetGrid:
        if entry.part not in self._grids:
            self._grids[entry.part] = SheetGrid(self._tree(entry.part), self.strings, name=entry.name)
        return self._grids[entry.part]

    # -- shared strings ---------------------------------------------------

    def _shared_strings_part(self) -> str | None:
        base_dir = posixpath.dirname(self.workbook_part)
        for rel in self._relationships():
            if rel.get("Type") == SHARED_STRINGS_REL:
                return _resolve(base_dir, rel.get("Target", ""))
        for el in self._tree(ARC_CONTENT_TYPES).findall(CT + "Override"):
            if el.get("ContentType") == SHARED_STRINGS:
                return el.get("PartName", "").lstrip("/")
        return None

    @property
    def strings(self) -> SharedStringPool:
        if self._strings is None:
            part = self._shared_strings_part()
            data = self._parts.get(part) if part else None
            try:
                self._strings = SharedStringPool.load(data)
            except _XML_ERRORS as exc:
                raise FormatError(
                    f"Malformed shared string table: {exc}",
                    details={"file": str(self.path)},
                ) from exc
        return self._strings

    def _store_strings(self, pool: SharedStringPool) -> None:
        part = self._shared_strings_part()
        has_rel = any(rel.get("Type") == SHARED_STRINGS_REL for rel in self._relationships())
        if part is None:
            part = ARC_SHARED_STRINGS
        if not has_rel:
            self._add_relationship(SHARED_STRINGS_REL, part)
        self._add_override("/" + part, SHARED_STRINGS)
        self._parts[part] = pool.to_xml()
        pool.dirty = False

    # -- persistence ------------------------------------------------------

    def save(self) -> None:
        """Serialize changed parts and replace the file atomically."""
        grids_changed = False
        for part, grid in self._grids.items():
            if grid.modified:
                grid.finish()
                self._touch(part)
                grid.modified = False
                grids_changed = True
        if self._strings is not None and (grids_changed or self._strings.dirty):
            self._store_strings(self._strings)
        for name in self._changed:
            self._parts[name] = XML_HEADER + tostring(self._trees[name])
        self._changed.clear()

        buf = BytesIO()
        with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as archive:
            for name, data in self._parts.items():
                archive.writestr(name, data)
        try:
            atomic_write(self.path, buf.getvalue())
        except OSError as exc:
            raise AccessError(
                f"Cannot write workbook {self.path}: {exc}",
                details={"file": str(self.path)},
            ) from exc
