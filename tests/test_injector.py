"""Tests for sdesync.cache.injector - the read path."""

import xml.etree.ElementTree as ET

import pytest

from sdesync.cache.injector import ValueInjector
from sdesync.cache.models import CacheElement, SdeCache
from sdesync.cache.paths import cache_path_for
from sdesync.cache.store import save_cache
from sdesync.config import SyncSettings


def _span(root, fact_id, lang="en"):
    for content in root.findall("content"):
        if content.get("lang") == lang:
            for span in content.iter("span"):
                if span.get("data-fact-id") == fact_id:
                    return span
    raise AssertionError(f"{fact_id} not found")


@pytest.fixture
def document(write_section):
    return write_section("section1.xml", {
        "en": [("ok", "old"), ("nods", "keep me"), ("err", "prior"), ("gone", "text"),
               ("blank", "x"), ("nolang", "n")],
    }, extra='<span data-fact-id="hidden" data-hidevalue="true">secret</span>'
             '<span data-fact-id="lvl2" class="xbrl-level-2">raw</span>')


@pytest.fixture
def cache(document):
    cache = SdeCache([
        CacheElement(id="ok", status="200-ok", values={"en": "  1,234 "}),
        CacheElement(id="nods", status="201-nodatasource", values={"en": "remote"}),
        CacheElement(id="err", status="500-upstreamerror", values={"en": "retained"}),
        CacheElement(id="blank", status="200-ok", values={"en": " "}),
        CacheElement(id="nolang", status="200-ok", values={"nl": "alleen nl"}),
        CacheElement(id="hidden", status="200-ok", values={"en": "should not show"}),
    ])
    save_cache(cache, cache_path_for(document))
    return cache


def _render(document, project, settings=None):
    root = ET.parse(document).getroot()
    return ValueInjector(settings).inject(root, document, project)


class TestInject:
    def test_ok_value_written_stripped(self, document, cache, project):
        root = _render(document, project)
        span = _span(root, "ok")
        assert span.text == "1,234"
        assert span.get("data-syncstatus") == "200-ok"

    def test_whitespace_value_verbatim(self, document, cache, project):
        assert _span(_render(document, project), "blank").text == " "

    def test_nodatasource_keeps_text(self, document, cache, project):
        span = _span(_render(document, project), "nods")
        assert span.text == "keep me"
        assert span.get("data-syncstatus") == "201-nodatasource"

    def test_error_shows_retained_value(self, document, cache, project):
        span = _span(_render(document, project), "err")
        assert span.text == "retained"
        assert span.get("data-syncstatus") == "500-upstreamerror"

    def test_error_marker(self, document, cache, project):
        root = _render(document, project, SyncSettings(error_marker="#ERR"))
        assert _span(root, "err").text == "#ERR"

    def test_missing_element(self, document, cache, project):
        span = _span(_render(document, project), "gone")
        assert span.text == "text"
        assert span.get("data-syncstatus") == "404-missing-cache-element"

    def test_missing_language_value(self, document, cache, project):
        span = _span(_render(document, project), "nolang")
        assert span.text == "n"
        assert span.get("data-syncstatus") == "404-missing-cache-value"

    def test_hide_value(self, document, cache, project):
        span = _span(_render(document, project), "hidden")
        assert span.text == ""

    def test_exempt_untouched(self, document, cache, project):
        span = _span(_render(document, project), "lvl2")
        assert span.text == "raw"
        assert span.get("data-syncstatus") is None


class TestMissingCache:
    def test_stamps_missing_file(self, document, project):
        root = _render(document, project)
        span = _span(root, "ok")
        assert span.text == "old"
        assert span.get("data-syncstatus") == "404-missing-sdecachefile"
        assert not cache_path_for(document).exists()

    def test_auto_create(self, document, project):
        root = _render(document, project, SyncSettings(auto_create_cache=True))
        assert cache_path_for(document).exists()
        assert _span(root, "ok").get("data-syncstatus") == "200-ok"

    def test_unreadable_cache_treated_as_missing(self, document, project):
        cache_path_for(document).write_text("<elements><broken")
        span = _span(_render(document, project), "ok")
        assert span.get("data-syncstatus") == "404-missing-sdecachefile"

    def test_invalid_path(self, project):
        root = ET.fromstring('<data><content lang="en"><article><span data-fact-id="a">1</span></article></content></data>')
        ValueInjector().inject(root, "/tmp/section.html", project)
        assert root.find(".//span").get("data-syncstatus") == "404-missing-sdecachefile"

    def test_disable_sync(self, document, project):
        project.disable_sync = True
        span = _span(_render(document, project), "ok")
        assert span.get("data-syncstatus") is None
