"""
Building a fresh cache from the facts found in a document.

Used when a document has no cache yet, when a save asks for a rebuild,
and in memory by the bulk sync to collect a project's facts.
"""

import logging
from pathlib import Path
from typing import Optional, Union

from sdesync.cache.models import CacheElement, FactNode, SdeCache, SyncStatus
from sdesync.cache.store import save_cache

logger = logging.getLogger(__name__)


def build_cache_from_facts(facts_per_language: dict[str, list[FactNode]]) -> SdeCache:
    """Create one cache element per distinct fact id.

    Every element carries a value slot for every language of the input,
    so a language that never saw the fact is stored as an explicit empty
    value instead of being left out. The first occurrence of a fact in a
    language seeds that language's value; later duplicates only fill in
    languages that are still unset.
    """
    languages = list(facts_per_language)
    elements: dict[str, CacheElement] = {}

    for lang, nodes in facts_per_language.items():
        for node in nodes:
            if node.exempt:
                continue
            element = elements.get(node.fact_id)
            if element is None:
                element = CacheElement(
                    id=node.fact_id,
                    status=SyncStatus.OK.value,
                    values={language: None for language in languages},
                )
                elements[node.fact_id] = element
            if element.values.get(lang) is None:
                element.values[lang] = node.value

    return SdeCache(elements=list(elements.values()))


def build_cache(
    facts_per_language: dict[str, list[FactNode]],
    cache_path: Optional[Union[str, Path]] = None,
    delete_existing: bool = False,
) -> Optional[SdeCache]:
    """Build a cache and optionally persist it.

    Args:
        facts_per_language: Extractor output.
        cache_path: Where to write the cache. None keeps it in memory.
        delete_existing: Remove the current cache file before building.

    Returns:
        The new cache, or None when the document holds no facts (nothing
        is written in that case).
    """
    if cache_path is not None and delete_existing:
        path = Path(cache_path)
        try:
            if path.exists():
                path.unlink()
        except OSError as e:
            logger.error(f"Structured data cache file could not be removed: {path}: {e}")

    cache = build_cache_from_facts(facts_per_language)
    if not cache.elements:
        logger.debug("No structured data elements found, no cache needed")
        return None

    if cache_path is not None:
        save_cache(cache, cache_path)
        logger.info(f"Created structured data cache {Path(cache_path).name} with {len(cache)} elements")

    return cache
