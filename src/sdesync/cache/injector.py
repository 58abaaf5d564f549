"""
Read path: put cached fact values into a document before it is shown.

Nothing is persisted here (except a cache auto-created on first render
when that is enabled). Every managed node gets a ``data-syncstatus``
attribute so the editor can flag values that are stale or unresolved.
A missing or broken cache never fails the render.
"""

import logging
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Optional, Union

from sdesync.cache.builder import build_cache
from sdesync.cache.extractor import ALL_LANGUAGES, count_facts, extract_facts
from sdesync.cache.models import FactNode, SdeCache, SyncStatus, is_upstream_error
from sdesync.cache.paths import cache_path_for
from sdesync.cache.store import load_cache
from sdesync.config import ProjectConfig, SyncSettings
from sdesync.errors import DocumentError

logger = logging.getLogger(__name__)


def _is_blank_literal(value: str) -> bool:
    """A value consisting only of whitespace such as " " or a no-break space."""
    return value != "" and value.strip() == ""


class ValueInjector:
    """Writes cached values into the fact nodes of a document."""

    def __init__(self, settings: Optional[SyncSettings] = None):
        self.settings = settings or SyncSettings()

    def inject(
        self,
        root: ET.Element,
        document_path: Union[str, Path],
        project: ProjectConfig,
        lang: str = ALL_LANGUAGES,
    ) -> ET.Element:
        """Update fact nodes in place from the document's cache.

        Args:
            root: Parsed content document.
            document_path: Location of the document (determines the cache).
            project: Project the document belongs to.
            lang: Language to process, or "all".

        Returns:
            The same root element, updated.
        """
        if project.disable_sync:
            logger.debug(f"Cache sync disabled for project {project.project_id}")
            return root

        source = Path(document_path).name
        facts = extract_facts(root, lang, project.languages, project.default_language, source)
        if count_facts(facts) == 0:
            return root

        cache = self._locate_cache(facts, document_path)
        if cache is None:
            for nodes in facts.values():
                for node in nodes:
                    if not node.exempt:
                        node.stamp(SyncStatus.MISSING_CACHE_FILE.value)
            return root

        for nodes in facts.values():
            for node in nodes:
                if not node.exempt:
                    self._apply(node, cache, source)
        return root

    def _locate_cache(self, facts: dict[str, list[FactNode]],
                      document_path: Union[str, Path]) -> Optional[SdeCache]:
        cache_path = cache_path_for(document_path)
        if cache_path is None:
            return None

        try:
            cache = load_cache(cache_path)
        except DocumentError as e:
            logger.error(f"Ignoring unreadable structured data cache {cache_path.name}: {e}")
            return None

        if cache is None:
            if self.settings.auto_create_cache:
                logger.info(f"Creating missing structured data cache {cache_path.name} from content")
                return build_cache(facts, cache_path)
            logger.error(f"Could not find structured data cache file {cache_path} for {document_path}")
        return cache

    def _apply(self, node: FactNode, cache: SdeCache, source: str) -> None:
        if node.hide_value:
            node.set_text("")
            node.stamp(SyncStatus.OK.value)
            return

        element = cache.find(node.fact_id)
        if element is None:
            logger.error(
                f"Fact '{node.fact_id}' cannot be located in the cache and is not updated ({source})"
            )
            node.stamp(SyncStatus.MISSING_CACHE_ELEMENT.value)
            return

        raw = element.get_value(node.lang)
        if raw is None:
            logger.warning(f"Fact '{node.fact_id}' has no cached value for '{node.lang}' ({source})")
            node.stamp(SyncStatus.MISSING_CACHE_VALUE.value)
            return

        status = element.status or SyncStatus.MISSING_CACHE_VALUE.value
        if status == SyncStatus.OK:
            node.set_text(raw if _is_blank_literal(raw) else raw.strip())
        elif status == SyncStatus.NO_DATA_SOURCE:
            pass
        elif is_upstream_error(status) and self.settings.error_marker is not None:
            node.set_text(self.settings.error_marker)
        elif raw.strip():
            node.set_text(raw.strip())
        elif _is_blank_literal(raw):
            node.set_text(raw)

        node.stamp(status)
