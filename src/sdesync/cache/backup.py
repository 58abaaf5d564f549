"""
Cache backups and before/after diffs.

Before a bulk sync (or before caches are cleared) the project's cache
files are copied to a backup folder in the shared area. After the sync,
diffing the backup against the live caches shows exactly which fact
values and statuses moved. Clearing caches without a successful backup
is refused.
"""

import logging
import shutil
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sdesync.cache.locks import CacheLockManager, default_lock_manager
from sdesync.cache.models import LEGACY_LANG, SdeCache
from sdesync.cache.paths import cache_path_for, data_reference_for, list_cache_files
from sdesync.cache.store import delete_cache, load_cache, write_bytes_atomic
from sdesync.config import ProjectConfig, SdeConfig
from sdesync.errors import BackupError, DocumentError

logger = logging.getLogger(__name__)

BACKUP_FOLDER_PREFIX = "structureddatacache-"
SYNC_LOG_FOLDER = "logs"
SYNC_LOG_FILE = "sde-synclog.xml"


@dataclass
class FactChange:
    """Old and new state of one fact value in one language."""
    fact_id: str
    lang: str
    old_value: Optional[str]
    new_value: Optional[str]
    old_status: Optional[str]
    new_status: Optional[str]

    @property
    def value_changed(self) -> bool:
        return self.old_value != self.new_value

    def to_dict(self) -> dict:
        return {
            "fact_id": self.fact_id,
            "lang": self.lang,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "old_status": self.old_status,
            "new_status": self.new_status,
        }


@dataclass
class DocumentDiff:
    data_reference: str
    changes: list[FactChange] = field(default_factory=list)

    def find(self, fact_id: str, lang: str) -> Optional[FactChange]:
        for change in self.changes:
            if change.fact_id == fact_id and change.lang == lang:
                return change
        return None


@dataclass
class SyncReport:
    """All differences between a backup and the live caches."""
    project_id: str
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    documents: list[DocumentDiff] = field(default_factory=list)

    @property
    def change_count(self) -> int:
        return sum(len(d.changes) for d in self.documents)

    def document(self, data_reference: str) -> Optional[DocumentDiff]:
        for diff in self.documents:
            if diff.data_reference == data_reference:
                return diff
        return None

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "created": self.created,
            "documents": {
                d.data_reference: [c.to_dict() for c in d.changes] for d in self.documents
            },
        }

    def to_xml(self) -> bytes:
        root = ET.Element("synclog", {"project": self.project_id, "created": self.created})
        for diff in self.documents:
            doc_node = ET.SubElement(root, "document", {"ref": diff.data_reference})
            for change in diff.changes:
                fact_node = ET.SubElement(doc_node, "fact", {"id": change.fact_id, "lang": change.lang})
                for tag, value, status in (
                    ("old", change.old_value, change.old_status),
                    ("new", change.new_value, change.new_status),
                ):
                    attrs = {"status": status} if status is not None else {"missing": "true"}
                    ET.SubElement(fact_node, tag, attrs).text = value or None
        ET.indent(root, space="  ")
        return ET.tostring(root, encoding="utf-8", xml_declaration=True) + b"\n"


def _languages(*caches: Optional[SdeCache]) -> list[str]:
    languages: list[str] = []
    for cache in caches:
        if cache is None:
            continue
        for element in cache:
            for lang in element.values:
                if lang != LEGACY_LANG and lang not in languages:
                    languages.append(lang)
    return languages


def diff_caches(data_reference: str, old: Optional[SdeCache], new: Optional[SdeCache]) -> DocumentDiff:
    """Compare two versions of one document's cache, value by value."""
    diff = DocumentDiff(data_reference)
    old = old or SdeCache()
    new = new or SdeCache()
    languages = _languages(old, new) or [LEGACY_LANG]

    fact_ids = old.fact_ids() + [fid for fid in new.fact_ids() if old.find(fid) is None]
    for fact_id in fact_ids:
        old_element = old.find(fact_id)
        new_element = new.find(fact_id)
        for lang in languages:
            old_value = old_element.get_value(lang) if old_element else None
            new_value = new_element.get_value(lang) if new_element else None
            old_status = old_element.status if old_element else None
            new_status = new_element.status if new_element else None
            if old_value == new_value and old_status == new_status:
                continue
            diff.changes.append(FactChange(fact_id, lang, old_value, new_value, old_status, new_status))
    return diff


class CacheBackup:
    """Backs up, compares and removes the caches of a project."""

    def __init__(self, config: SdeConfig, lock_manager: Optional[CacheLockManager] = None):
        self.config = config
        self.locks = lock_manager or default_lock_manager

    def backup_folder(self, project_id: str) -> Path:
        return Path(self.config.settings.shared_folder) / "temp" / f"{BACKUP_FOLDER_PREFIX}{project_id}"

    def _cache_files(self, project: ProjectConfig, data_references: Optional[list[str]]) -> list[Path]:
        if not data_references:
            return list_cache_files(project.data_path)
        paths = []
        for data_reference in data_references:
            cache_path = cache_path_for(project.data_path / data_reference)
            if cache_path is not None and cache_path.exists():
                paths.append(cache_path)
        return paths

    def backup(self, project_id: str, data_references: Optional[list[str]] = None) -> list[Path]:
        """Copy the project's caches into a fresh backup folder.

        Returns:
            Paths of the backup copies.

        Raises:
            BackupError: The backup folder could not be prepared or a
                cache could not be copied.
        """
        project = self.config.get_project(project_id)
        target = self.backup_folder(project_id)

        try:
            if target.exists():
                shutil.rmtree(target)
            target.mkdir(parents=True)
        except OSError as e:
            raise BackupError(f"Could not prepare backup folder {target}: {e}") from e

        copies = []
        for cache_path in self._cache_files(project, data_references):
            try:
                copies.append(Path(shutil.copy2(cache_path, target / cache_path.name)))
            except OSError as e:
                raise BackupError(f"Could not back up {cache_path.name}: {e}") from e

        logger.info(f"Backed up {len(copies)} structured data caches of {project_id} to {target}")
        return copies

    def diff(self, project_id: str) -> SyncReport:
        """Compare the last backup with the current caches."""
        project = self.config.get_project(project_id)
        folder = self.backup_folder(project_id)
        report = SyncReport(project_id)
        if not folder.is_dir():
            logger.warning(f"No cache backup found for project {project_id}")
            return report

        for backup_path in list_cache_files(folder):
            live_path = project.data_path / backup_path.name
            try:
                old = load_cache(backup_path)
                new = load_cache(live_path)
            except DocumentError as e:
                logger.error(f"Skipping {backup_path.name} in sync report: {e}")
                continue
            document_diff = diff_caches(data_reference_for(backup_path), old, new)
            if document_diff.changes:
                report.documents.append(document_diff)

        logger.info(f"Sync report for {project_id}: {report.change_count} changes "
                    f"in {len(report.documents)} documents")
        return report

    def write_report(self, report: SyncReport) -> Path:
        """Store a report as ``logs/sde-synclog.xml`` in the project data folder."""
        project = self.config.get_project(report.project_id)
        path = project.data_path / SYNC_LOG_FOLDER / SYNC_LOG_FILE
        write_bytes_atomic(path, report.to_xml())
        logger.info(f"Wrote sync report to {path}")
        return path

    def remove_caches(self, project_id: str, data_references: Optional[list[str]] = None) -> list[str]:
        """Back up and then delete caches.

        Returns:
            Names of the removed cache files.

        Raises:
            BackupError: The backup failed; nothing was removed.
            CacheBusyError: The project is being synchronized or saved;
                nothing was backed up or removed.
        """
        project = self.config.get_project(project_id)
        removed = []
        with self.locks.project_lease(project_id, holder="clear"):
            self.backup(project_id, data_references)
            for cache_path in self._cache_files(project, data_references):
                with self.locks.cache_lock(cache_path, project_id, within_lease=True):
                    if delete_cache(cache_path):
                        removed.append(cache_path.name)
        logger.info(f"Removed {len(removed)} structured data caches from project {project_id}")
        return removed
