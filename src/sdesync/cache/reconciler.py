"""
Save path: merge an author's edited document back into its cache.

Only the saved language is touched. Entries for facts the document no
longer uses survive unless pruning is requested, so unrelated values are
never lost. The cache is written once, at the end, and only when
something actually changed.
"""

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from sdesync.cache.builder import build_cache
from sdesync.cache.extractor import ALL_LANGUAGES, extract_facts
from sdesync.cache.locks import CacheLockManager, default_lock_manager
from sdesync.cache.models import CacheElement, SdeCache, SyncStatus
from sdesync.cache.paths import cache_path_for
from sdesync.cache.store import load_cache, save_cache
from sdesync.config import ProjectConfig
from sdesync.errors import CacheBusyError, ReconcileError

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """What a reconciliation did to the cache."""
    cache_path: Optional[Path] = None
    created: bool = False   # cache was (re)built from the document
    written: bool = False
    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    duplicates_collapsed: int = 0

    @property
    def changed(self) -> bool:
        return self.written


class CacheReconciler:
    """Applies saved document content to the document's cache."""

    def __init__(self, lock_manager: Optional[CacheLockManager] = None):
        self.locks = lock_manager or default_lock_manager

    def reconcile(
        self,
        root: ET.Element,
        document_path: Union[str, Path],
        project: ProjectConfig,
        lang: str,
        rebuild_from_scratch: bool = False,
        prune_unreferenced: bool = False,
    ) -> ReconcileResult:
        """Merge one saved language of a document into its cache.

        Args:
            root: The saved document.
            document_path: Location of the document.
            project: Owning project.
            lang: Language that was saved.
            rebuild_from_scratch: Discard the cache and rebuild it from
                the document.
            prune_unreferenced: Drop cache entries the document no longer
                references.

        Raises:
            CacheBusyError: The cache or project is locked; retry later.
            ReconcileError: Anything else went wrong. The cache on disk is
                unchanged.
        """
        cache_path = cache_path_for(document_path)
        if cache_path is None:
            raise ReconcileError(f"Could not generate a structured data cache path for {document_path}",
                                 str(document_path))
        try:
            with self.locks.cache_lock(cache_path, project.project_id):
                return self._reconcile(root, cache_path, project, lang,
                                       rebuild_from_scratch, prune_unreferenced)
        except (CacheBusyError, ReconcileError):
            raise
        except Exception as e:
            logger.error(f"There was an error updating the structured data cache {cache_path.name}: {e}")
            raise ReconcileError(f"Failed to update structured data cache {cache_path.name}: {e}",
                                 str(cache_path)) from e

    def _reconcile(self, root: ET.Element, cache_path: Path, project: ProjectConfig, lang: str,
                   rebuild_from_scratch: bool, prune_unreferenced: bool) -> ReconcileResult:
        result = ReconcileResult(cache_path=cache_path)
        source = cache_path.name
        cache_exists = cache_path.exists()

        if not cache_exists or rebuild_from_scratch:
            facts = extract_facts(root, ALL_LANGUAGES, project.languages, project.default_language, source)
            cache = build_cache(facts, cache_path, delete_existing=rebuild_from_scratch and cache_exists)
            result.created = True
            result.written = cache is not None
            if cache is not None:
                result.added = cache.fact_ids()
            return result

        cache = load_cache(cache_path)
        if cache is None:
            raise ReconcileError(f"Structured data cache disappeared: {cache_path}", str(cache_path))

        if prune_unreferenced:
            for element in cache:
                element.pending_removal = True

        changed = self._merge(cache, root, project, lang, source, result)

        if prune_unreferenced:
            stale = [element for element in cache if element.pending_removal]
            for element in stale:
                cache.remove(element)
                result.removed.append(element.id)
            if stale:
                logger.info(f"Pruned {len(stale)} unreferenced elements from {source}")
                changed = True

        if changed:
            cache.normalize_languages(project.languages)
            save_cache(cache, cache_path)
            result.written = True
            logger.info(
                f"Updated {source}: {len(result.added)} added, {len(result.updated)} updated, "
                f"{len(result.removed)} removed"
            )
        return result

    def _merge(self, cache: SdeCache, root: ET.Element, project: ProjectConfig, lang: str,
               source: str, result: ReconcileResult) -> bool:
        facts = extract_facts(root, lang, project.languages, project.default_language, source)
        changed = False
        seen: set[str] = set()

        for node in facts.get(lang, []):
            if node.exempt:
                continue
            if node.no_cache_update:
                logger.info(f"Not updating fact {node.fact_id} in the cache, data-nocacheupdate is set")
                continue
            if node.fact_id in seen:
                continue
            seen.add(node.fact_id)

            value = node.value
            matches = cache.find_all(node.fact_id)
            if not matches:
                cache.append(CacheElement(id=node.fact_id, status=SyncStatus.NEW.value, values={lang: value}))
                result.added.append(node.fact_id)
                changed = True
                continue

            first, duplicates = matches[0], matches[1:]
            first.pending_removal = False
            if duplicates:
                logger.warning(
                    f"The structured data cache {source} contains {len(matches)} elements "
                    f"with fact id '{node.fact_id}', keeping the first"
                )
                for duplicate in duplicates:
                    cache.remove(duplicate)
                result.duplicates_collapsed += len(duplicates)
                changed = True

            if not first.has_value(lang):
                logger.warning(f"Cache element {node.fact_id} in {source} had no '{lang}' value, adding it")
            if first.values.get(lang) != value:
                first.set_value(lang, value)
                result.updated.append(node.fact_id)
                changed = True

        return changed
