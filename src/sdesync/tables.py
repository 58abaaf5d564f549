"""
Synchronization of external (Excel-derived) tables embedded in documents.

Each ``div.external-table > table`` in a section document has a snapshot
``__table-<id>.xml`` next to the document, holding the last table the
table service delivered::

    <html>
      <head><meta name="sync-structure-update">false</meta></head>
      <tableDefinition>
        <table><tbody>
          <tr><td>Revenue</td><td data-id="f1" data-value="-12.5"><value>-12.5</value></td></tr>
        </tbody></table>
      </tableDefinition>
    </html>

Values and hidden rows or cells (``data-visibility="hidden"`` on a snapshot
cell) are copied into the live table only when both have the same body
cell count. Otherwise the table is flagged as drifted and left alone
until the structures match again.
"""

import logging
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Optional

from sdesync.cache.extractor import ALL_LANGUAGES
from sdesync.cache.paths import DOCUMENT_SUFFIX, TABLE_CACHE_PREFIX
from sdesync.cache.store import write_bytes_atomic
from sdesync.config import ProjectConfig, SdeConfig
from sdesync.errors import DocumentError

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_STRUCTURE_ERROR = "structure-error"
STATUS_MISSING_TABLE = "missing-external-table"
STATUS_TARGET_NOT_FOUND = "target-node-notfound"

META_STRUCTURE_UPDATE = "sync-structure-update"
META_SOURCE_AVAILABLE = "sync-source-available"

TABLE_ID_PREFIXES = ("table_", "tablewrapper_")
TEXT_TAGS = ("p", "span", "div", "b", "i")
STEERING_ATTRIBUTES = ("data-fact-id", "data-value")
HIDE_CLASS = "hide"


def base_table_id(table_id: str) -> str:
    """Strip the wrapper prefix the editor puts in front of table ids."""
    for prefix in TABLE_ID_PREFIXES:
        if table_id.startswith(prefix):
            return table_id[len(prefix):]
    return table_id


def snapshot_file_name(table_id: str) -> str:
    return f"{TABLE_CACHE_PREFIX}{base_table_id(table_id)}{DOCUMENT_SUFFIX}"


def format_cell_value(value: str) -> str:
    """Render negative numbers the way financial tables show them: (12.5)."""
    value = value.strip()
    for minus in ("-", "−"):
        if value.startswith(minus) and len(value) > len(minus):
            number = value[len(minus):]
            if number.endswith("%"):
                return f"({number[:-1]})%"
            return f"({number})"
    return value


def _get_meta(snapshot: ET.Element, name: str) -> Optional[str]:
    for meta in snapshot.findall("head/meta"):
        if meta.get("name") == name:
            return (meta.text or "").strip()
    return None


def _set_meta(snapshot: ET.Element, name: str, value: str) -> None:
    head = snapshot.find("head")
    if head is None:
        head = ET.Element("head")
        snapshot.insert(0, head)
    for meta in head.findall("meta"):
        if meta.get("name") == name:
            meta.text = value
            return
    ET.SubElement(head, "meta", {"name": name}).text = value


def _body_rows(table: ET.Element) -> list[ET.Element]:
    return table.findall("tbody/tr")


def _cell_count(table: Optional[ET.Element]) -> int:
    if table is None:
        return 0
    return len(table.findall("tbody/tr/td"))


def _find_external_tables(root: ET.Element, lang: str) -> list[tuple[str, ET.Element]]:
    tables = []
    for content in root.findall("content"):
        content_lang = content.get("lang", "")
        if lang != ALL_LANGUAGES and content_lang != lang:
            continue
        for div in content.iter("div"):
            if "external-table" not in div.get("class", "").split():
                continue
            for table in div.findall("table"):
                tables.append((content_lang, table))
    return tables


def _target_element(cell: ET.Element) -> ET.Element:
    """Innermost text-bearing element of a cell, created when missing."""
    candidates = [e for e in cell.iter() if e is not cell and e.tag in TEXT_TAGS]
    if candidates:
        return candidates[-1]
    return ET.SubElement(cell, "span")


def _clear_steering_attributes(cell: ET.Element, target: ET.Element) -> None:
    parents = {child: parent for parent in cell.iter() for child in parent}
    node = parents.get(target)
    while node is not None:
        for name in STEERING_ATTRIBUTES:
            node.attrib.pop(name, None)
        node = parents.get(node)


def _has_class(element: ET.Element, name: str) -> bool:
    return name in element.get("class", "").split()


def _remove_class(element: ET.Element, name: str) -> None:
    classes = element.get("class")
    if classes is None:
        return
    kept = [c for c in classes.split() if c != name]
    if kept:
        element.set("class", " ".join(kept))
    else:
        element.attrib.pop("class")


def _add_class(element: ET.Element, name: str) -> None:
    if not _has_class(element, name):
        element.set("class", " ".join(element.get("class", "").split() + [name]))


def _apply_visibility(source_table: ET.Element, table: ET.Element, table_id: str) -> None:
    """Mirror hidden cells and fully hidden rows of the snapshot on the live table."""
    for section in ("thead", "tbody"):
        target_rows = table.findall(f"{section}/tr")
        source_rows = [row for row in source_table.findall(f"{section}/tr")
                       if row.find("td") is not None or row.find("th") is not None]
        for row_index, source_row in enumerate(source_rows):
            if row_index >= len(target_rows):
                logger.warning(f"Could not locate {section} row {row_index + 1} in table {table_id} "
                               f"to show or hide")
                continue
            target_row = target_rows[row_index]
            target_cells = list(target_row)
            _remove_class(target_row, HIDE_CLASS)
            for cell in target_cells:
                _remove_class(cell, HIDE_CLASS)

            source_cells = list(source_row)
            hidden = 0
            for cell_index, source_cell in enumerate(source_cells):
                if source_cell.get("data-visibility") != "hidden":
                    continue
                hidden += 1
                if cell_index < len(target_cells):
                    _add_class(target_cells[cell_index], HIDE_CLASS)
                else:
                    logger.warning(f"Could not locate cell {row_index + 1}/{cell_index + 1} in table "
                                   f"{table_id} to hide")
            if source_cells and hidden == len(source_cells):
                _add_class(target_row, HIDE_CLASS)


class ExternalTableSync:
    """Copies snapshot values into the external tables of a document."""

    def __init__(self, config: SdeConfig):
        self.config = config

    def sync_document(self, root: ET.Element, project_id: str, lang: str = ALL_LANGUAGES) -> dict[str, str]:
        """Synchronize all external tables of a section document in place.

        Returns:
            Sync status per table id. The same status is stamped on each
            table as ``data-syncstatus``.
        """
        project = self.config.get_project(project_id)
        results: dict[str, str] = {}

        for content_lang, table in _find_external_tables(root, lang):
            table_id = table.get("id", "")
            if not table_id:
                logger.warning(f"Skipping external table without id in project {project_id} ({content_lang})")
                continue
            try:
                status = self._sync_table(table, table_id, project)
            except (DocumentError, OSError) as e:
                logger.error(f"Failed to sync external table {table_id} ({content_lang}): {e}")
                continue
            table.set("data-syncstatus", status)
            results[table_id] = status
            if status != STATUS_OK:
                logger.warning(f"External table {table_id} ({content_lang}) sync status: {status}")

        return results

    def _load_snapshot(self, path: Path) -> ET.Element:
        try:
            return ET.parse(path).getroot()
        except ET.ParseError as e:
            raise DocumentError(f"Unparsable external table snapshot: {e}", str(path)) from e

    def _sync_table(self, table: ET.Element, table_id: str, project: ProjectConfig) -> str:
        snapshot_path = project.data_path / snapshot_file_name(table_id)
        if not snapshot_path.exists():
            logger.error(f"No snapshot {snapshot_path.name} for external table {table_id}")
            return STATUS_MISSING_TABLE

        snapshot = self._load_snapshot(snapshot_path)
        flagged = _get_meta(snapshot, META_STRUCTURE_UPDATE) == "true"
        if _get_meta(snapshot, META_SOURCE_AVAILABLE) == "false":
            return STATUS_MISSING_TABLE

        source_table = snapshot.find("tableDefinition/table")
        source_cells = _cell_count(source_table)
        target_cells = _cell_count(table)
        if source_cells != target_cells:
            logger.debug(f"Table {table_id} drifted: {source_cells} source cells, {target_cells} target cells")
            return STATUS_STRUCTURE_ERROR

        if flagged:
            # Structures match again; clear the flag left by an earlier sync
            _set_meta(snapshot, META_STRUCTURE_UPDATE, "false")
            ET.indent(snapshot, space="  ")
            write_bytes_atomic(snapshot_path, ET.tostring(snapshot, encoding="utf-8", xml_declaration=True))
            logger.info(f"Cleared structure error for external table {table_id}")

        if source_table is not None:
            _apply_visibility(source_table, table, table_id)
        return self._copy_values(source_table, table, table_id)

    def _copy_values(self, source_table: Optional[ET.Element], table: ET.Element, table_id: str) -> str:
        if source_table is None:
            return STATUS_OK

        status = STATUS_OK
        target_rows = _body_rows(table)
        for row_index, source_row in enumerate(_body_rows(source_table)):
            source_cells = source_row.findall("td")
            target_row_cells = target_rows[row_index].findall("td") if row_index < len(target_rows) else []
            # First column holds labels, not values
            for cell_index, source_cell in enumerate(source_cells[1:], start=1):
                value_node = source_cell.find("value")
                if value_node is None:
                    continue
                if cell_index >= len(target_row_cells):
                    logger.error(f"Could not locate target cell {row_index + 1}/{cell_index + 1} in table {table_id}")
                    status = STATUS_TARGET_NOT_FOUND
                    continue

                cell = target_row_cells[cell_index]
                target = _target_element(cell)
                target.text = format_cell_value(value_node.text or "")
                _clear_steering_attributes(cell, target)

                fact_id = source_cell.get("data-id")
                if fact_id and not target.get("data-fact-id"):
                    target.set("data-fact-id", fact_id)
                excel_value = source_cell.get("data-value")
                if excel_value:
                    target.set("data-value", excel_value)
                else:
                    target.attrib.pop("data-value", None)
        return status
