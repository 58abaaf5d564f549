"""
Bulk synchronization of all caches of a project against the mapping service.

A run collects every fact referenced anywhere in the project, resolves
the whole set with a single bulk lookup and then rewrites the caches
that changed. Problems with individual facts never fail the run: they
are recorded as sync statuses and in the returned SyncStatistics. Only
an unusable mapping service (or a cancellation before the lookup)
aborts the run, and it does so before anything is written.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from sdesync.cache.builder import build_cache_from_facts
from sdesync.cache.extractor import ALL_LANGUAGES, count_facts, extract_facts, load_document
from sdesync.cache.locks import CacheLockManager, CancellationToken, default_lock_manager
from sdesync.cache.models import (
    LEGACY_LANG,
    CacheElement,
    SdeCache,
    SyncStatistics,
    SyncStatus,
    is_upstream_error,
)
from sdesync.cache.paths import cache_path_for, list_content_documents
from sdesync.cache.store import load_cache, save_cache
from sdesync.config import ProjectConfig, SdeConfig
from sdesync.errors import CacheBusyError, DocumentError, SyncCancelledError
from sdesync.mapping_client import BulkLookupClient, BulkLookupItem

logger = logging.getLogger(__name__)

NO_FACTS_MESSAGE = "No structured data elements found"


@dataclass
class DocumentPlan:
    """In-memory cache of one document while a run is in progress."""
    data_reference: str
    cache_path: Path
    cache: SdeCache
    referenced: set[str] = field(default_factory=set)


@dataclass
class FactResolution:
    status: str
    values: dict[str, str]
    message: str = ""


def _baseline_element(fresh: CacheElement, existing: Optional[CacheElement]) -> CacheElement:
    """Start from the retained cache values, filling gaps from the document."""
    if existing is None:
        return fresh

    values: dict[str, Optional[str]] = {}
    for lang, inline_value in fresh.values.items():
        retained = existing.get_value(lang)
        values[lang] = retained if retained is not None else inline_value
    for lang, retained in existing.values.items():
        if lang != LEGACY_LANG and lang not in values:
            values[lang] = retained
    return CacheElement(id=fresh.id, status=existing.status, values=values)


class BulkSyncEngine:
    """Resolves all facts of a project with one bulk lookup."""

    def __init__(
        self,
        config: SdeConfig,
        client: BulkLookupClient,
        lock_manager: Optional[CacheLockManager] = None,
    ):
        self.config = config
        self.client = client
        self.locks = lock_manager or default_lock_manager

    def sync_project(
        self,
        project_id: str,
        data_references: Optional[list[str]] = None,
        prune_unreferenced: bool = False,
        cancel: Optional[CancellationToken] = None,
        on_lease: Optional[Callable[[], object]] = None,
    ) -> SyncStatistics:
        """Synchronize the caches of a project.

        Args:
            project_id: Project to synchronize.
            data_references: Limit the run to these document file names.
            prune_unreferenced: Drop cache entries that no document
                references any more.
            cancel: Token checked between documents.
            on_lease: Called once the project lease is held, before any
                cache is read. Exceptions abort the run.

        Returns:
            SyncStatistics for the run.

        Raises:
            ConfigError: Unknown project.
            CacheBusyError: Another bulk sync holds the project.
            UpstreamError: The bulk lookup failed; nothing was written.
            SyncCancelledError: Cancelled before the bulk lookup.
        """
        project = self.config.get_project(project_id)
        stats = SyncStatistics()

        with self.locks.project_lease(project_id, holder="bulk-sync"):
            if on_lease is not None:
                on_lease()
            documents = self._resolve_documents(project, data_references, stats)
            plans, origins = self._collect(project, documents, prune_unreferenced, stats, cancel)

            stats.unique = len(origins)
            if not origins:
                stats.message = NO_FACTS_MESSAGE
                logger.info(f"{NO_FACTS_MESSAGE} in project {project_id}")
                return stats

            if cancel is not None and cancel.cancelled:
                raise SyncCancelledError(f"Sync of project {project_id} cancelled before lookup")

            items = self.client.lookup(project_id, list(origins), list(project.languages))
            resolutions = self._resolve(items, origins, project, stats)

            for plan in plans:
                self._apply(plan, resolutions, project, stats)

            self._write(plans, project, stats, cancel)

        stats.message = (
            f"Synchronized {stats.unique} structured data elements in {len(plans)} documents: "
            f"{stats.updated} updated, {len(stats.sync_warning)} warnings, {len(stats.sync_error)} errors"
        )
        if stats.cancelled:
            stats.message += " (cancelled)"
        logger.info(stats.message)
        return stats

    def _resolve_documents(self, project: ProjectConfig, data_references: Optional[list[str]],
                           stats: SyncStatistics) -> list[Path]:
        if not data_references:
            return list_content_documents(project.data_path)

        documents = []
        for data_reference in data_references:
            path = project.data_path / data_reference
            if not path.is_file():
                message = f"Data file {data_reference} not found in project {project.project_id}"
                logger.error(message)
                stats.log_error.append(message)
                continue
            documents.append(path)
        return documents

    def _collect(
        self,
        project: ProjectConfig,
        documents: list[Path],
        prune_unreferenced: bool,
        stats: SyncStatistics,
        cancel: Optional[CancellationToken],
    ) -> tuple[list[DocumentPlan], dict[str, list[str]]]:
        plans: list[DocumentPlan] = []
        origins: dict[str, list[str]] = {}

        for document_path in documents:
            if cancel is not None and cancel.cancelled:
                raise SyncCancelledError(f"Sync of project {project.project_id} cancelled")

            data_reference = document_path.name
            cache_path = cache_path_for(document_path)
            if cache_path is None:
                continue

            try:
                root = load_document(document_path)
            except DocumentError as e:
                message = f"Could not load {data_reference}: {e}"
                logger.error(message)
                stats.log_error.append(message)
                continue

            facts = extract_facts(root, ALL_LANGUAGES, project.languages, project.default_language,
                                  data_reference)
            stats.found += sum(1 for nodes in facts.values() for node in nodes if not node.exempt)

            try:
                existing = load_cache(cache_path)
            except DocumentError as e:
                message = f"Rebuilding unreadable cache {cache_path.name}: {e}"
                logger.warning(message)
                stats.log_warning.append(message)
                existing = None

            if count_facts(facts) == 0 and existing is None:
                continue

            fresh = build_cache_from_facts(facts)
            cache = SdeCache()
            referenced: set[str] = set()
            for element in fresh:
                baseline = existing.find(element.id) if existing is not None else None
                cache.append(_baseline_element(element, baseline))
                referenced.add(element.id)
                origins.setdefault(element.id, []).append(data_reference)

            if existing is not None and not prune_unreferenced:
                for element in existing:
                    if element.id not in referenced and cache.find(element.id) is None:
                        cache.append(element)
            elif existing is not None:
                pruned = [e.id for e in existing if e.id not in referenced]
                if pruned:
                    logger.info(f"Pruning {len(pruned)} unreferenced elements from {cache_path.name}")

            plans.append(DocumentPlan(data_reference, cache_path, cache, referenced))
            logger.debug(f"{data_reference}: {len(referenced)} facts")

        return plans, origins

    def _resolve(
        self,
        items: dict[str, BulkLookupItem],
        origins: dict[str, list[str]],
        project: ProjectConfig,
        stats: SyncStatistics,
    ) -> dict[str, FactResolution]:
        """Turn lookup items into one resolution per fact, logging each failure once."""
        resolutions: dict[str, FactResolution] = {}
        for fact_id, data_references in origins.items():
            item = items.get(fact_id)
            if item is None:
                resolution = FactResolution(SyncStatus.NOT_FOUND_IN_MAPPING_SERVICE.value, {},
                                            "No result returned by the mapping service")
            else:
                resolution = FactResolution(item.status, dict(item.values), item.message)
            resolutions[fact_id] = resolution

            documents = ", ".join(data_references)
            if resolution.status == SyncStatus.OK:
                value = resolution.values.get(project.default_language, "")
            else:
                value = resolution.message
                entry = f"FactId: {fact_id} ({resolution.status}) in {documents}"
                if resolution.message:
                    entry += f": {resolution.message}"
                if is_upstream_error(resolution.status):
                    logger.error(entry)
                    stats.log_error.append(entry)
                elif resolution.status != SyncStatus.NO_DATA_SOURCE:
                    logger.warning(entry)
                    stats.log_warning.append(entry)
            stats.add_item(fact_id, resolution.status, value, data_references)
        return resolutions

    def _apply(self, plan: DocumentPlan, resolutions: dict[str, FactResolution],
               project: ProjectConfig, stats: SyncStatistics) -> None:
        for element in plan.cache:
            if element.id not in plan.referenced:
                continue
            resolution = resolutions[element.id]
            element.status = resolution.status

            if resolution.status == SyncStatus.OK:
                for lang in project.languages:
                    new_value = resolution.values.get(lang)
                    if new_value is None:
                        logger.warning(f"No '{lang}' value returned for {element.id}, keeping the cached one")
                        continue
                    if element.values.get(lang) == new_value:
                        stats.without_update += 1
                    else:
                        element.set_value(lang, new_value)
                        stats.updated += 1
            elif resolution.status == SyncStatus.NO_DATA_SOURCE:
                stats.without_update += len(project.languages)

    def _write(self, plans: list[DocumentPlan], project: ProjectConfig, stats: SyncStatistics,
               cancel: Optional[CancellationToken]) -> None:
        for index, plan in enumerate(plans):
            if cancel is not None and cancel.cancelled:
                skipped = len(plans) - index
                message = f"Sync cancelled, {skipped} documents not written"
                logger.warning(message)
                stats.log_warning.append(message)
                stats.cancelled = True
                return

            plan.cache.normalize_languages(project.languages)
            try:
                with self.locks.cache_lock(plan.cache_path, project.project_id, within_lease=True):
                    written = save_cache(plan.cache, plan.cache_path, only_if_changed=True)
            except (OSError, CacheBusyError) as e:
                message = f"Failed to write structured data cache {plan.cache_path.name}: {e}"
                logger.error(message)
                stats.log_error.append(message)
                continue

            if written:
                stats.documents_written += 1
                stats.log_success.append(f"Updated {plan.cache_path.name}")
