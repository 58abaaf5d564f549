"""
On-disk persistence of SDE caches.

Cache files are small XML documents::

    <elements version="2.0">
      <element id="fact-1" status="200-ok">
        <value lang="en">1,234</value>
        <value lang="nl"/>
      </element>
    </elements>

Serialization is deterministic so that an unchanged cache is rewritten
byte for byte. Writes go through a temp file and a rename, so a reader
never sees a half-written cache.
"""

import logging
import os
import tempfile
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Optional, Union

from packaging.version import InvalidVersion, Version

from sdesync.cache.models import LEGACY_LANG, CacheElement, SdeCache, SyncStatus
from sdesync.errors import DocumentError

logger = logging.getLogger(__name__)

CACHE_FORMAT_VERSION = "2.0"
# Caches written before the format was versioned
LEGACY_FORMAT_VERSION = "1.0"

PathLike = Union[str, Path]


def cache_to_xml(cache: SdeCache) -> bytes:
    """Serialize a cache to UTF-8 XML bytes."""
    root = ET.Element("elements", {"version": CACHE_FORMAT_VERSION})
    for element in cache.elements:
        node = ET.SubElement(root, "element", {"id": element.id, "status": element.status or ""})
        for lang, value in element.values.items():
            attrs = {"lang": lang} if lang != LEGACY_LANG else {}
            value_node = ET.SubElement(node, "value", attrs)
            value_node.text = value or None
    ET.indent(root, space="  ")
    data = ET.tostring(root, encoding="utf-8", xml_declaration=True)
    # A raw CR would come back as LF after end-of-line normalization
    return data.replace(b"\r", b"&#13;") + b"\n"


def _format_version(root: ET.Element) -> Version:
    raw = root.get("version", LEGACY_FORMAT_VERSION)
    try:
        return Version(raw)
    except InvalidVersion:
        logger.warning(f"Unreadable cache format version {raw!r}, assuming {LEGACY_FORMAT_VERSION}")
        return Version(LEGACY_FORMAT_VERSION)


def parse_cache(data: bytes, source: str = "") -> SdeCache:
    """Parse cache XML bytes.

    Raises:
        DocumentError: The data is not a cache document.
    """
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        raise DocumentError(f"Unparsable structured data cache: {e}", source) from e
    if root.tag != "elements":
        raise DocumentError(f"Not a structured data cache (root <{root.tag}>)", source)

    version = _format_version(root)
    if version > Version(CACHE_FORMAT_VERSION):
        logger.warning(f"Cache {source} has newer format {version}, reading it as {CACHE_FORMAT_VERSION}")

    cache = SdeCache()
    for node in root.findall("element"):
        fact_id = node.get("id", "")
        if not fact_id:
            logger.warning(f"Skipping cache element without id in {source}")
            continue
        element = CacheElement(id=fact_id, status=node.get("status", SyncStatus.OK.value))
        for value_node in node.findall("value"):
            # Pre-2.0 caches stored a single value without a language
            lang = value_node.get("lang", LEGACY_LANG)
            if lang == LEGACY_LANG and version >= Version(CACHE_FORMAT_VERSION):
                logger.debug(f"Language-less value for {fact_id} in {source}")
            element.values[lang] = value_node.text or ""
        cache.append(element)
    return cache


def load_cache(path: PathLike) -> Optional[SdeCache]:
    """Load a cache file. Returns None when the file does not exist.

    Raises:
        DocumentError: The file exists but cannot be read or parsed.
    """
    path = Path(path)
    if not path.exists():
        return None
    try:
        data = path.read_bytes()
    except OSError as e:
        raise DocumentError(f"Failed to read structured data cache: {e}", str(path)) from e
    cache = parse_cache(data, str(path))
    logger.debug(f"Loaded {len(cache)} cache elements from {path.name}")
    return cache


def write_bytes_atomic(path: Path, data: bytes) -> None:
    """Write a file through a temp file in the same folder and a rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_fd, temp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.stem}_",
        suffix=".tmp",
    )
    try:
        with os.fdopen(temp_fd, "wb") as fh:
            fh.write(data)
        os.replace(temp_path, path)
    except Exception:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def save_cache(cache: SdeCache, path: PathLike, only_if_changed: bool = False) -> bool:
    """Persist a cache.

    Args:
        cache: Cache to write.
        path: Target cache file.
        only_if_changed: Skip the write when the file already holds
            exactly these bytes.

    Returns:
        True if the file was written.
    """
    path = Path(path)
    data = cache_to_xml(cache)
    if only_if_changed and path.exists():
        try:
            if path.read_bytes() == data:
                logger.debug(f"Cache {path.name} unchanged, not rewriting")
                return False
        except OSError as e:
            logger.debug(f"Could not compare existing cache {path.name}: {e}")
    write_bytes_atomic(path, data)
    logger.debug(f"Saved {len(cache)} cache elements to {path.name}")
    return True


def delete_cache(path: PathLike) -> bool:
    """Remove a cache file. Returns False if there was nothing to remove."""
    path = Path(path)
    if not path.exists():
        return False
    path.unlink()
    logger.info(f"Removed structured data cache {path.name}")
    return True
