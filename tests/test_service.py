"""Tests for sdesync.service and the sdesync command line."""

import json
import subprocess
import sys
import xml.etree.ElementTree as ET
from unittest.mock import patch

import pytest

from sdesync.cache.paths import cache_path_for
from sdesync.cache.store import load_cache
from sdesync.cli import main
from sdesync.errors import BackupError, CacheBusyError, DocumentError, InvalidStatusError
from sdesync.service import SdeService

from conftest import FakeLookupClient, section_xml


@pytest.fixture
def client():
    return FakeLookupClient({"k": {"en": "12", "nl": "twaalf"}, "m": {"en": "5", "nl": "vijf"}})


@pytest.fixture
def service(config, client, locks):
    return SdeService(config=config, client=client, lock_manager=locks)


@pytest.fixture
def document(write_section):
    return write_section("s1.xml", {"en": [("k", "10"), ("m", "5")], "nl": [("k", "tien"), ("m", "vijf")]})


class TestSdeService:
    def test_sync_then_report(self, service, document):
        service.save_document("ar24", "s1.xml", "en")
        stats = service.sync_project("ar24")
        assert stats.updated == 2

        report = service.create_sync_report("ar24")
        change = report.document("s1.xml").find("k", "en")
        assert (change.old_value, change.new_value) == ("10", "12")
        assert (service.config.get_project("ar24").data_path / "logs" / "sde-synclog.xml").exists()

    def test_sync_document(self, service, document, write_section):
        other = write_section("s2.xml", {"en": [("m", "1")]})
        service.sync_document("ar24", "s1.xml")
        assert cache_path_for(document).exists()
        assert not cache_path_for(other).exists()

    def test_busy_sync_keeps_previous_backup(self, service, locks, document):
        service.save_document("ar24", "s1.xml", "en")
        service.sync_project("ar24")
        with locks.project_lease("ar24"):
            with pytest.raises(CacheBusyError):
                service.sync_project("ar24")
        change = service.create_sync_report("ar24", write=False).document("s1.xml").find("k", "en")
        assert (change.old_value, change.new_value) == ("10", "12")

    def test_backup_failure_aborts_sync(self, service, document):
        service.save_document("ar24", "s1.xml", "en")
        with patch.object(service.backups, "backup", side_effect=BackupError("disk full")):
            with pytest.raises(BackupError):
                service.sync_project("ar24")
        assert service.client.calls == []
        assert load_cache(cache_path_for(document)).find("k").get_value("en") == "10"

    def test_render_after_sync(self, service, document):
        service.sync_project("ar24")
        root = service.render_document("ar24", "s1.xml", "nl")
        span = root.find(".//content[@lang='nl']//span[@data-fact-id='k']")
        assert span.text == "twaalf"
        assert span.get("data-syncstatus") == "200-ok"

    def test_render_missing_document(self, service):
        with pytest.raises(DocumentError):
            service.render_document("ar24", "nope.xml")

    def test_save_document_content(self, service, document):
        service.save_document("ar24", "s1.xml", "en")
        content = section_xml({"en": [("k", "99"), ("m", "5")], "nl": [("k", "tien"), ("m", "vijf")]})
        result = service.save_document("ar24", "s1.xml", "en", content=content)
        assert result.updated == ["k"]
        assert b"99" in document.read_bytes()
        assert load_cache(cache_path_for(document)).find("k").get_value("nl") == "tien"

    def test_save_rejects_invalid_xml(self, service, document):
        before = document.read_bytes()
        with pytest.raises(DocumentError):
            service.save_document("ar24", "s1.xml", "en", content=b"<data><content")
        assert document.read_bytes() == before

    def test_save_busy_during_sync(self, service, locks, document):
        with locks.project_lease("ar24"):
            with pytest.raises(CacheBusyError):
                service.save_document("ar24", "s1.xml", "en")

    def test_update_status(self, service, document):
        service.save_document("ar24", "s1.xml", "en")
        assert service.update_status("ar24", "s1.xml", "k", "201-nodatasource")
        assert load_cache(cache_path_for(document)).find("k").status == "201-nodatasource"
        assert not service.update_status("ar24", "s1.xml", "unknown", "200-ok")

    @pytest.mark.parametrize("status", ["500-upstreamerror", "500-timeout", "new", "404-notfound"])
    def test_update_status_known_codes(self, service, document, status):
        service.save_document("ar24", "s1.xml", "en")
        assert service.update_status("ar24", "s1.xml", "k", status)

    @pytest.mark.parametrize("status", ["ok", "500-", "", "201-whatever"])
    def test_update_status_rejects_unknown(self, service, document, status):
        service.save_document("ar24", "s1.xml", "en")
        with pytest.raises(InvalidStatusError):
            service.update_status("ar24", "s1.xml", "k", status)
        assert load_cache(cache_path_for(document)).find("k").status == "200-ok"

    def test_update_status_without_cache(self, service, document):
        with pytest.raises(DocumentError):
            service.update_status("ar24", "s1.xml", "k", "200-ok")

    def test_remove_caches(self, service, document):
        service.save_document("ar24", "s1.xml", "en")
        assert service.remove_caches("ar24") == ["__structured-data--s1.xml"]
        assert not cache_path_for(document).exists()

    def test_sync_external_tables_without_tables(self, service, document):
        assert service.sync_external_tables("ar24", "s1.xml") == {}

    def test_default_client_from_settings(self, config, locks):
        service = SdeService(config=config, lock_manager=locks)
        assert service.client.base_url == "http://mapping.test"


@pytest.fixture
def config_path(tmp_path, data_dir):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "settings": {"mapping_service_url": "http://mapping.test", "shared_folder": str(tmp_path / "shared")},
        "projects": {"ar24": {"data_folder": str(data_dir), "languages": ["en", "nl"]}},
    }))
    return path


class TestCli:
    def test_sync(self, config_path, document, client, capsys):
        assert main(["--config", str(config_path), "save", "ar24", "s1.xml", "--lang", "en"]) == 0
        with patch("sdesync.service.MappingServiceClient.from_settings", return_value=client):
            code = main(["--config", str(config_path), "sync", "ar24", "--report"])
        assert code == 0
        out = capsys.readouterr().out
        assert "## Summary" in out
        assert "- k [en]: '10' -> '12'" in out

    def test_render(self, config_path, document, capsys):
        assert main(["--config", str(config_path), "render", "ar24", "s1.xml"]) == 0
        root = ET.fromstring(capsys.readouterr().out)
        assert root.find(".//span").get("data-syncstatus") == "404-missing-sdecachefile"

    def test_save_and_status(self, config_path, document, capsys):
        assert main(["--config", str(config_path), "save", "ar24", "s1.xml", "--lang", "en"]) == 0
        assert main(["--config", str(config_path), "status", "ar24", "s1.xml", "k", "201-nodatasource"]) == 0
        assert load_cache(cache_path_for(document)).find("k").status == "201-nodatasource"

    def test_error_exit_code(self, config_path, capsys):
        assert main(["--config", str(config_path), "render", "unknown", "s1.xml"]) == 1
        assert "Unknown project" in capsys.readouterr().err

    def test_no_command(self, config_path, capsys):
        assert main(["--config", str(config_path)]) == 1

    def test_version_module_entry(self):
        result = subprocess.run(
            [sys.executable, "-m", "sdesync", "--version"],
            capture_output=True,
            text=True,
            timeout=30,
        )
        assert result.returncode == 0
        assert "sdesync" in result.stdout
