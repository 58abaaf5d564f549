"""Shared fixtures: a temp project, document writers and a fake mapping service."""

from pathlib import Path
from typing import Optional

import pytest

from sdesync.cache.locks import CacheLockManager
from sdesync.config import ProjectConfig, SdeConfig, SyncSettings
from sdesync.mapping_client import BulkLookupItem


def section_xml(facts: dict[str, list[tuple[str, str]]], extra: str = "") -> bytes:
    """Build a section data file. ``facts`` maps language -> [(fact id, text)]."""
    contents = []
    for lang, pairs in facts.items():
        spans = "".join(f'<p><span data-fact-id="{fid}">{text}</span></p>' for fid, text in pairs)
        contents.append(f'<content lang="{lang}"><article><div class="body">{spans}{extra}</div></article></content>')
    return f"<data>{''.join(contents)}</data>".encode("utf-8")


class FakeLookupClient:
    """In-process stand-in for the mapping service."""

    def __init__(self, values: Optional[dict[str, dict[str, str]]] = None):
        self.values = values or {}
        self.results: dict[str, str] = {}
        self.missing: set[str] = set()
        self.error: Optional[Exception] = None
        self.calls: list[list[str]] = []

    def lookup(self, project_id, fact_ids, languages):
        self.calls.append(list(fact_ids))
        if self.error is not None:
            raise self.error
        items = {}
        for fact_id in fact_ids:
            if fact_id in self.missing:
                continue
            result = self.results.get(fact_id, "ok")
            values = self.values.get(fact_id, {}) if result == "ok" else {}
            items[fact_id] = BulkLookupItem(fact_id, result, dict(values),
                                            "" if result == "ok" else f"lookup failed: {result}")
        return items


@pytest.fixture
def data_dir(tmp_path) -> Path:
    folder = tmp_path / "data"
    folder.mkdir()
    return folder


@pytest.fixture
def project(data_dir) -> ProjectConfig:
    return ProjectConfig(project_id="ar24", data_folder=str(data_dir), languages=["en", "nl"])


@pytest.fixture
def config(project, tmp_path) -> SdeConfig:
    settings = SyncSettings(
        mapping_service_url="http://mapping.test",
        shared_folder=str(tmp_path / "shared"),
        lock_timeout=0.2,
    )
    return SdeConfig(settings=settings, projects={project.project_id: project})


@pytest.fixture
def locks() -> CacheLockManager:
    return CacheLockManager(timeout=0.2)


@pytest.fixture
def write_section(data_dir):
    """Write a section document into the project folder and return its path."""
    def _write(name: str, facts: dict[str, list[tuple[str, str]]], extra: str = "") -> Path:
        path = data_dir / name
        path.write_bytes(section_xml(facts, extra))
        return path
    return _write
