"""
Cache file naming.

Every content document ``<folder>/<name>.xml`` owns at most one cache,
``<folder>/__structured-data--<name>.xml``. Anything that is not an XML
document has no cache.
"""

import logging
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

CACHE_PREFIX = "__structured-data"
CACHE_SEPARATOR = "--"
DOCUMENT_SUFFIX = ".xml"

# External table snapshots live next to the content documents as well
TABLE_CACHE_PREFIX = "__table-"

PathLike = Union[str, Path]


def cache_file_name(document_path: PathLike) -> str:
    """File name of the cache for a document, or "" when it cannot have one."""
    path = Path(document_path)
    if path.suffix != DOCUMENT_SUFFIX or not path.stem:
        logger.warning(f"Could not generate a structured data cache file name for: {document_path}")
        return ""
    return f"{CACHE_PREFIX}{CACHE_SEPARATOR}{path.stem}{DOCUMENT_SUFFIX}"


def cache_path_for(document_path: PathLike) -> Optional[Path]:
    """Path of the cache co-located with a document.

    Returns None for documents that cannot have a cache; callers treat
    that the same as a missing cache.
    """
    name = cache_file_name(document_path)
    if not name:
        return None
    return Path(document_path).parent / name


def is_cache_file(path: PathLike) -> bool:
    name = Path(path).name
    return name.startswith(CACHE_PREFIX) and name.endswith(DOCUMENT_SUFFIX)


def is_derived_file(path: PathLike) -> bool:
    """True for generated artifacts (SDE caches, table snapshots)."""
    name = Path(path).name
    return is_cache_file(path) or name.startswith(TABLE_CACHE_PREFIX)


def data_reference_for(cache_path: PathLike) -> str:
    """Document file name a cache file belongs to."""
    name = Path(cache_path).name
    prefix = f"{CACHE_PREFIX}{CACHE_SEPARATOR}"
    if name.startswith(prefix):
        return name[len(prefix):]
    return name


def list_content_documents(data_folder: PathLike) -> list[Path]:
    """All content documents of a project folder, sorted, without derived files."""
    folder = Path(data_folder)
    if not folder.is_dir():
        return []
    return sorted(
        p for p in folder.glob(f"*{DOCUMENT_SUFFIX}")
        if p.is_file() and not is_derived_file(p)
    )


def list_cache_files(data_folder: PathLike) -> list[Path]:
    folder = Path(data_folder)
    if not folder.is_dir():
        return []
    return sorted(p for p in folder.glob(f"{CACHE_PREFIX}*{DOCUMENT_SUFFIX}") if p.is_file())
