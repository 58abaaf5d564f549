"""Tests for sdesync.cache.extractor - finding fact nodes in documents."""

import xml.etree.ElementTree as ET

import pytest

from sdesync.cache.extractor import count_facts, extract_facts, load_document
from sdesync.cache.models import NodeFlags
from sdesync.errors import DocumentError

SECTION = """
<data>
  <content lang="en">
    <article data-fact-id="ignored-top-level">
      <p><span data-fact-id="a">1</span> and <span data-fact-id="b">2</span></p>
      <p><span data-fact-id="  ">blank</span></p>
      <p><span data-fact-id="h" data-hidevalue="true">secret</span></p>
      <p><span data-fact-id="n" data-nocacheupdate="true">3</span></p>
      <p><span data-fact-id="x" class="xbrl-level-2 number">4</span></p>
      <table data-workbookreference="wb1"><tr><td><span data-fact-id="t1">5</span></td></tr></table>
      <table data-workbookreference="wb1" data-instanceid="i1"><tr><td><span data-fact-id="t2">6</span></td></tr></table>
    </article>
  </content>
  <content lang="nl">
    <article><p><span data-fact-id="a">een</span></p></article>
  </content>
</data>
"""

FOOTNOTES = """
<footnotes>
  <footnote id="f1">
    <span lang="en">See <span data-fact-id="a">1</span></span>
    <span lang="nl">Zie <span data-fact-id="a">een</span></span>
  </footnote>
  <footnote id="f2">
    <span>Default <span data-fact-id="b">2</span></span>
  </footnote>
</footnotes>
"""


class TestSectionDocuments:
    def test_languages_and_order(self):
        facts = extract_facts(ET.fromstring(SECTION))
        assert list(facts) == ["en", "nl"]
        ids = [n.fact_id for n in facts["en"]]
        assert ids[:2] == ["a", "b"]
        assert [n.fact_id for n in facts["nl"]] == ["a"]

    def test_top_level_block_is_not_a_fact(self):
        facts = extract_facts(ET.fromstring(SECTION))
        assert "ignored-top-level" not in [n.fact_id for n in facts["en"]]

    def test_blank_id_skipped(self):
        facts = extract_facts(ET.fromstring(SECTION))
        assert all(n.fact_id.strip() for n in facts["en"])

    def test_workbook_tables_excluded(self):
        ids = [n.fact_id for n in extract_facts(ET.fromstring(SECTION))["en"]]
        assert "t1" not in ids
        assert "t2" in ids

    def test_flags(self):
        nodes = {n.fact_id: n for n in extract_facts(ET.fromstring(SECTION))["en"]}
        assert nodes["h"].flags == NodeFlags.HIDE_VALUE
        assert nodes["n"].no_cache_update
        assert nodes["x"].exempt
        assert nodes["a"].flags == NodeFlags.NONE

    def test_single_language(self):
        facts = extract_facts(ET.fromstring(SECTION), lang="nl")
        assert list(facts) == ["nl"]
        assert facts["nl"][0].value == "een"


class TestFootnotes:
    def test_project_languages(self):
        facts = extract_facts(ET.fromstring(FOOTNOTES), languages=["en", "nl"], default_language="en")
        assert [n.fact_id for n in facts["en"]] == ["a", "b"]
        assert [n.fact_id for n in facts["nl"]] == ["a"]

    def test_languages_derived_from_spans(self):
        facts = extract_facts(ET.fromstring(FOOTNOTES))
        assert set(facts) == {"en", "nl"}
        # span without lang belongs to the first (default) language
        assert "b" in [n.fact_id for n in facts["en"]]


class TestMisc:
    def test_unknown_shape(self):
        assert extract_facts(ET.fromstring("<html><body/></html>")) == {}

    def test_count(self):
        assert count_facts(extract_facts(ET.fromstring(SECTION))) == 7

    def test_load_document_errors(self, tmp_path):
        with pytest.raises(DocumentError):
            load_document(tmp_path / "missing.xml")
        broken = tmp_path / "broken.xml"
        broken.write_text("<data><content>")
        with pytest.raises(DocumentError):
            load_document(broken)
