"""
Fact extraction from content documents.

Two document shapes carry facts:

- section data files: ``<data><content lang="en">...</content></data>``,
  facts are any descendant with a ``data-fact-id`` attribute;
- footnote collections: ``<footnotes><footnote><span lang="en">...``,
  facts are ``span`` elements with ``data-fact-id``. Spans without a
  language belong to the project default language.

Facts inside tables bound to an external workbook are owned by the
external table sync and are never returned here.
"""

import logging
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Iterator, Optional, Union

from sdesync.cache.models import FactNode, NodeFlags
from sdesync.errors import DocumentError

logger = logging.getLogger(__name__)

ALL_LANGUAGES = "all"
FACT_ID_ATTRIBUTE = "data-fact-id"


def load_document(path: Union[str, Path]) -> ET.Element:
    """Parse a content document and return its root element.

    Raises:
        DocumentError: The file is missing or not well-formed XML.
    """
    path = Path(path)
    try:
        return ET.parse(path).getroot()
    except FileNotFoundError as e:
        raise DocumentError(f"Content document not found: {path}", str(path)) from e
    except (ET.ParseError, OSError) as e:
        raise DocumentError(f"Failed to parse content document {path.name}: {e}", str(path)) from e


def is_section_document(root: ET.Element) -> bool:
    return root.tag == "data" and root.find("content") is not None


def is_footnote_document(root: ET.Element) -> bool:
    return root.tag == "footnotes" and root.find("footnote/span") is not None


def _is_workbook_table(element: ET.Element) -> bool:
    return (
        element.tag == "table"
        and element.get("data-workbookreference") is not None
        and element.get("data-instanceid") is None
    )


def _iter_fact_elements(node: ET.Element, tag: Optional[str] = None,
                        inside_workbook_table: bool = False) -> Iterator[ET.Element]:
    """Depth-first walk yielding fact elements below ``node``."""
    for child in node:
        in_table = inside_workbook_table or _is_workbook_table(child)
        if not in_table and child.get(FACT_ID_ATTRIBUTE) is not None:
            if tag is None or child.tag == tag:
                yield child
        yield from _iter_fact_elements(child, tag, in_table)


def _collect(elements: Iterator[ET.Element], lang: str, source: str) -> list[FactNode]:
    nodes: list[FactNode] = []
    for element in elements:
        fact_id = (element.get(FACT_ID_ATTRIBUTE) or "").strip()
        if not fact_id:
            logger.warning(f"Skipping fact node with an empty fact id ({source}, lang: {lang})")
            continue
        nodes.append(FactNode(
            element=element,
            fact_id=fact_id,
            lang=lang,
            flags=NodeFlags.from_element(element),
        ))
    return nodes


def _extract_sections(root: ET.Element, lang: str, source: str) -> dict[str, list[FactNode]]:
    result: dict[str, list[FactNode]] = {}
    for content in root.findall("content"):
        content_lang = content.get("lang", "")
        if not content_lang or content_lang in result:
            continue
        if lang != ALL_LANGUAGES and content_lang != lang:
            continue

        def _below_top_level(content=content):
            # Facts live inside the article (or other top-level block), not on it
            for block in content:
                yield from _iter_fact_elements(block)

        result[content_lang] = _collect(_below_top_level(), content_lang, source)
    return result


def _extract_footnotes(root: ET.Element, lang: str, languages: Optional[list[str]],
                       default_language: Optional[str], source: str) -> dict[str, list[FactNode]]:
    spans = root.findall("footnote/span")
    if not languages:
        # No project language list available; use what the spans declare
        languages = []
        for span in spans:
            span_lang = span.get("lang")
            if span_lang and span_lang not in languages:
                languages.append(span_lang)
        if default_language and default_language not in languages:
            languages.insert(0, default_language)
        if not languages:
            logger.error(f"Cannot determine footnote languages for {source}")
            return {}
    default_language = default_language or languages[0]

    result: dict[str, list[FactNode]] = {}
    for project_lang in languages:
        if lang != ALL_LANGUAGES and project_lang != lang:
            continue

        def _spans_for(project_lang=project_lang):
            for span in spans:
                span_lang = span.get("lang")
                if span_lang == project_lang or (span_lang is None and project_lang == default_language):
                    yield from _iter_fact_elements(span, tag="span")

        result[project_lang] = _collect(_spans_for(), project_lang, source)
    return result


def extract_facts(
    root: ET.Element,
    lang: str = ALL_LANGUAGES,
    languages: Optional[list[str]] = None,
    default_language: Optional[str] = None,
    source: str = "",
) -> dict[str, list[FactNode]]:
    """Find the fact-consuming nodes of a document.

    Args:
        root: Document root element.
        lang: A single language, or "all".
        languages: Project languages (needed for footnote collections).
        default_language: Language of footnote spans without @lang.
        source: Document name used in log messages.

    Returns:
        Per-language lists of FactNode in document order. Unknown
        document shapes yield an empty dict.
    """
    if is_section_document(root):
        return _extract_sections(root, lang, source)
    if is_footnote_document(root):
        return _extract_footnotes(root, lang, languages, default_language, source)

    logger.warning(f"Unknown document type to retrieve structured data elements from ({source})")
    return {}


def count_facts(facts_per_language: dict[str, list[FactNode]]) -> int:
    return sum(len(nodes) for nodes in facts_per_language.values())
