"""
SdeService - the operator-facing entry point.

Wires configuration, locks, the mapping service client and the cache
components together behind one object. Each public method corresponds to
one operator endpoint (and one CLI command).
"""

import logging
import xml.etree.ElementTree as ET
from functools import partial
from pathlib import Path
from typing import Optional

from sdesync.cache.backup import CacheBackup, SyncReport
from sdesync.cache.extractor import ALL_LANGUAGES, is_section_document, load_document
from sdesync.cache.injector import ValueInjector
from sdesync.cache.locks import CacheLockManager, CancellationToken
from sdesync.cache.models import SyncStatistics, is_valid_status
from sdesync.cache.paths import cache_path_for
from sdesync.cache.reconciler import CacheReconciler, ReconcileResult
from sdesync.cache.store import load_cache, save_cache, write_bytes_atomic
from sdesync.cache.sync import BulkSyncEngine
from sdesync.config import ProjectConfig, SdeConfig, load_config
from sdesync.errors import DocumentError, InvalidStatusError
from sdesync.mapping_client import BulkLookupClient, MappingServiceClient
from sdesync.tables import ExternalTableSync

logger = logging.getLogger(__name__)


class SdeService:
    """Facade over the SDE cache subsystem.

    Usage:
        service = SdeService()
        stats = service.sync_project("ar24")
        report = service.create_sync_report("ar24")
    """

    def __init__(
        self,
        config: Optional[SdeConfig] = None,
        client: Optional[BulkLookupClient] = None,
        lock_manager: Optional[CacheLockManager] = None,
    ):
        self.config = config or load_config()
        self.locks = lock_manager or CacheLockManager(self.config.settings.lock_timeout)
        self._client = client
        self.injector = ValueInjector(self.config.settings)
        self.reconciler = CacheReconciler(self.locks)
        self.backups = CacheBackup(self.config, self.locks)
        self.tables = ExternalTableSync(self.config)

    @property
    def client(self) -> BulkLookupClient:
        if self._client is None:
            self._client = MappingServiceClient.from_settings(self.config.settings)
        return self._client

    def _document_path(self, project: ProjectConfig, data_reference: str) -> Path:
        path = project.data_path / data_reference
        if not path.is_file():
            raise DocumentError(f"Data file {data_reference} not found in project {project.project_id}",
                                str(path))
        return path

    def update_status(self, project_id: str, data_reference: str, fact_id: str, status: str) -> bool:
        """Set the status of one fact in one document's cache.

        Returns:
            False if the cache holds no element with this fact id.

        Raises:
            InvalidStatusError: The status is not a known status code.
        """
        if not is_valid_status(status):
            raise InvalidStatusError(f"Unknown sync status {status!r}")
        project = self.config.get_project(project_id)
        cache_path = cache_path_for(project.data_path / data_reference)
        if cache_path is None:
            raise DocumentError(f"{data_reference} cannot have a structured data cache", data_reference)

        with self.locks.cache_lock(cache_path, project_id):
            cache = load_cache(cache_path)
            if cache is None:
                raise DocumentError(f"No structured data cache for {data_reference}", str(cache_path))
            elements = cache.find_all(fact_id)
            if not elements:
                logger.warning(f"Fact {fact_id} not found in {cache_path.name}")
                return False
            for element in elements:
                element.status = status
            save_cache(cache, cache_path, only_if_changed=True)

        logger.info(f"Set status of {fact_id} in {data_reference} to {status}")
        return True

    def sync_project(
        self,
        project_id: str,
        prune_unreferenced: bool = False,
        backup: bool = True,
        cancel: Optional[CancellationToken] = None,
        data_references: Optional[list[str]] = None,
    ) -> SyncStatistics:
        """Back up the caches, then run a bulk sync.

        The backup is taken under the project lease, so a run rejected as
        busy leaves the previous backup in place.
        """
        on_lease = partial(self.backups.backup, project_id, data_references) if backup else None
        engine = BulkSyncEngine(self.config, self.client, self.locks)
        return engine.sync_project(project_id, data_references, prune_unreferenced, cancel, on_lease)

    def sync_document(self, project_id: str, data_reference: str, prune_unreferenced: bool = False,
                      backup: bool = True) -> SyncStatistics:
        return self.sync_project(project_id, prune_unreferenced, backup, data_references=[data_reference])

    def remove_caches(self, project_id: str, data_references: Optional[list[str]] = None) -> list[str]:
        return self.backups.remove_caches(project_id, data_references)

    def create_sync_report(self, project_id: str, write: bool = True) -> SyncReport:
        """Diff the last backup against the live caches."""
        report = self.backups.diff(project_id)
        if write:
            self.backups.write_report(report)
        return report

    def render_document(self, project_id: str, data_reference: str, lang: str = ALL_LANGUAGES) -> ET.Element:
        """Load a document with cached fact values and table values applied."""
        project = self.config.get_project(project_id)
        path = self._document_path(project, data_reference)
        root = load_document(path)
        self.injector.inject(root, path, project, lang)
        if is_section_document(root):
            self.tables.sync_document(root, project_id, lang)
        return root

    def save_document(
        self,
        project_id: str,
        data_reference: str,
        lang: str,
        content: Optional[bytes] = None,
        rebuild_from_scratch: bool = False,
        prune_unreferenced: bool = False,
    ) -> ReconcileResult:
        """Store an edited document and merge its values into the cache.

        Args:
            content: New document bytes. None reconciles the document
                already on disk.
        """
        project = self.config.get_project(project_id)
        path = project.data_path / data_reference

        if content is not None:
            try:
                root = ET.fromstring(content)
            except ET.ParseError as e:
                raise DocumentError(f"Saved content is not valid XML: {e}", str(path)) from e
            write_bytes_atomic(path, content)
        else:
            root = load_document(self._document_path(project, data_reference))

        return self.reconciler.reconcile(root, path, project, lang, rebuild_from_scratch, prune_unreferenced)

    def sync_external_tables(self, project_id: str, data_reference: str, lang: str = ALL_LANGUAGES,
                             write: bool = False) -> dict[str, str]:
        """Synchronize the external tables of one document.

        Args:
            write: Persist the updated document.
        """
        project = self.config.get_project(project_id)
        path = self._document_path(project, data_reference)
        root = load_document(path)
        results = self.tables.sync_document(root, project_id, lang)
        if write and results:
            write_bytes_atomic(path, ET.tostring(root, encoding="utf-8", xml_declaration=True))
        return results
