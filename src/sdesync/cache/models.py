"""
Core data models for the structured data element (SDE) cache.

A content document references facts by id. Each document has one cache
holding, per fact, the last known value per language and the sync status
that explains whether that value can be trusted.
"""

from dataclasses import dataclass, field
from enum import Enum, Flag, auto
from typing import Optional
from xml.etree.ElementTree import Element

# Key used for values written by old caches that did not record a language
LEGACY_LANG = ""


class SyncStatus(str, Enum):
    """Sync status codes stored in caches and stamped on fact nodes."""
    OK = "200-ok"
    NO_DATA_SOURCE = "201-nodatasource"
    MISSING_CACHE_VALUE = "404-missing-cache-value"
    MISSING_CACHE_ELEMENT = "404-missing-cache-element"
    MISSING_CACHE_FILE = "404-missing-sdecachefile"
    NOT_FOUND_IN_MAPPING_SERVICE = "404-notfoundinmappingservice"
    NOT_FOUND = "404-notfound"
    MAPPING_NOT_FOUND = "404-mappingnotfound"
    UPSTREAM_ERROR = "500-upstreamerror"
    NEW = "new"  # added on save, not yet resolved against the mapping service


# Remote result codes with a known meaning; everything else is an upstream error
_RESULT_CODE_MAP = {
    "ok": SyncStatus.OK,
    "nodatasource": SyncStatus.NO_DATA_SOURCE,
    "notfound": SyncStatus.NOT_FOUND,
    "mappingnotfound": SyncStatus.MAPPING_NOT_FOUND,
}


def result_code_to_status(result_code: Optional[str]) -> str:
    """Translate a mapping service result code into a sync status."""
    code = (result_code or "").strip().lower()
    status = _RESULT_CODE_MAP.get(code, SyncStatus.UPSTREAM_ERROR)
    return status.value


def is_upstream_error(status: str) -> bool:
    return status.startswith("500")


def is_valid_status(status: str) -> bool:
    """Known status code, or a 500-* code carrying an upstream failure reason."""
    if status in {s.value for s in SyncStatus}:
        return True
    return status.startswith("500-") and len(status) > len("500-")


def is_synced(status: str) -> bool:
    return status in (SyncStatus.OK.value, SyncStatus.NO_DATA_SOURCE.value)


class NodeFlags(Flag):
    """Per-node markers that change how a fact node is treated."""
    NONE = 0
    HIDE_VALUE = auto()       # render empty, never look up the cache
    NO_CACHE_UPDATE = auto()  # saving must not write this node into the cache
    EXEMPT = auto()           # secondary (xbrl-level-2) node, not managed here

    @classmethod
    def from_element(cls, element: Element) -> "NodeFlags":
        flags = cls.NONE
        if element.get("data-hidevalue", "") == "true":
            flags |= cls.HIDE_VALUE
        if element.get("data-nocacheupdate", "") == "true":
            flags |= cls.NO_CACHE_UPDATE
        if "xbrl-level-2" in element.get("class", ""):
            flags |= cls.EXEMPT
        return flags


@dataclass
class FactNode:
    """A fact-consuming node inside a content document.

    Wraps the live XML element so that callers can read and rewrite it
    in place.
    """
    element: Element
    fact_id: str
    lang: str
    flags: NodeFlags = NodeFlags.NONE

    @property
    def value(self) -> str:
        return "".join(self.element.itertext())

    @property
    def exempt(self) -> bool:
        return bool(self.flags & NodeFlags.EXEMPT)

    @property
    def hide_value(self) -> bool:
        return bool(self.flags & NodeFlags.HIDE_VALUE)

    @property
    def no_cache_update(self) -> bool:
        return bool(self.flags & NodeFlags.NO_CACHE_UPDATE)

    def set_text(self, text: str) -> None:
        """Replace the node content with plain text, keeping attributes."""
        for child in list(self.element):
            self.element.remove(child)
        self.element.text = text

    def stamp(self, status: str) -> None:
        self.element.set("data-syncstatus", str(status))

    @property
    def status(self) -> Optional[str]:
        return self.element.get("data-syncstatus")


@dataclass
class CacheElement:
    """Cached state of one fact: status plus a value per language.

    A language key mapped to "" (or None) is an empty value; a missing
    key means the value is absent.
    """
    id: str
    status: str = SyncStatus.OK.value
    values: dict[str, Optional[str]] = field(default_factory=dict)
    pending_removal: bool = False  # transient, used while pruning

    def has_value(self, lang: str) -> bool:
        return lang in self.values

    def get_value(self, lang: str) -> Optional[str]:
        """Value for a language, falling back to a legacy language-less value."""
        if lang in self.values:
            return self.values[lang] or ""
        if LEGACY_LANG in self.values:
            return self.values[LEGACY_LANG] or ""
        return None

    def set_value(self, lang: str, value: Optional[str]) -> None:
        self.values[lang] = value

    @property
    def languages(self) -> list[str]:
        return [lang for lang in self.values if lang != LEGACY_LANG]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "values": dict(self.values),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CacheElement":
        return cls(
            id=data["id"],
            status=data.get("status", SyncStatus.OK.value),
            values=dict(data.get("values", {})),
        )


@dataclass
class SdeCache:
    """All cached facts of one content document, in file order.

    Duplicate ids can exist in caches written by older versions; lookups
    return the first match.
    """
    elements: list[CacheElement] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.elements)

    def __iter__(self):
        return iter(self.elements)

    def find(self, fact_id: str) -> Optional[CacheElement]:
        for element in self.elements:
            if element.id == fact_id:
                return element
        return None

    def find_all(self, fact_id: str) -> list[CacheElement]:
        return [e for e in self.elements if e.id == fact_id]

    def fact_ids(self) -> list[str]:
        seen: dict[str, None] = {}
        for element in self.elements:
            seen.setdefault(element.id, None)
        return list(seen)

    def append(self, element: CacheElement) -> None:
        self.elements.append(element)

    def remove(self, element: CacheElement) -> None:
        # Identity, not equality: duplicates compare equal
        self.elements = [e for e in self.elements if e is not element]

    def normalize_languages(self, languages: list[str]) -> None:
        """Order every element's values by the project language order.

        Languages outside the project list keep their relative order
        after the known ones. Absent values are not invented.
        """
        rank = {lang: i for i, lang in enumerate(languages)}
        for element in self.elements:
            ordered = sorted(
                element.values.items(),
                key=lambda item: rank.get(item[0], len(rank)),
            )
            element.values = dict(ordered)

    def to_dict(self) -> dict:
        return {"elements": [e.to_dict() for e in self.elements]}

    @classmethod
    def from_dict(cls, data: dict) -> "SdeCache":
        return cls(elements=[CacheElement.from_dict(e) for e in data.get("elements", [])])


@dataclass
class SdeItem:
    """One fact outcome reported by a sync run."""
    id: str
    status: str
    value: str

    def to_dict(self) -> dict:
        return {"id": self.id, "status": self.status, "value": self.value}


@dataclass
class SyncStatistics:
    """Aggregate outcome of one bulk sync run.

    Partial success is success: failed facts end up in the error/warning
    logs while the run itself reports success.
    """
    success: bool = True
    message: str = ""
    debug_info: str = ""
    found: int = 0           # fact references over all documents
    unique: int = 0          # distinct fact ids requested
    updated: int = 0         # cached values that changed
    without_update: int = 0  # cached values that were already current
    documents_written: int = 0
    cancelled: bool = False
    log_success: list[str] = field(default_factory=list)
    log_warning: list[str] = field(default_factory=list)
    log_error: list[str] = field(default_factory=list)
    sync_ok: list[SdeItem] = field(default_factory=list)
    sync_warning: list[SdeItem] = field(default_factory=list)
    sync_error: list[SdeItem] = field(default_factory=list)
    ok_by_document: dict[str, list[SdeItem]] = field(default_factory=dict)
    warning_by_document: dict[str, list[SdeItem]] = field(default_factory=dict)
    error_by_document: dict[str, list[SdeItem]] = field(default_factory=dict)

    def add_item(self, fact_id: str, status: str, value: str,
                 data_references: Optional[list[str]] = None) -> None:
        """Record the outcome of one fact, once per category."""
        item = SdeItem(fact_id, status, value)
        if is_synced(status):
            target, by_document, label = self.sync_ok, self.ok_by_document, "OK"
        elif is_upstream_error(status):
            target, by_document, label = self.sync_error, self.error_by_document, "ERROR"
        else:
            target, by_document, label = self.sync_warning, self.warning_by_document, "WARNING"

        if any(existing.id == fact_id for existing in target):
            self.log_warning.append(f"FactId: {fact_id} already exists in {label} list")
            return

        target.append(item)
        for data_reference in data_references or []:
            by_document.setdefault(data_reference, []).append(item)

    def to_dict(self) -> dict:
        def _by_doc(d: dict[str, list[SdeItem]]) -> dict:
            return {ref: [i.to_dict() for i in items] for ref, items in d.items()}

        return {
            "success": self.success,
            "message": self.message,
            "debug_info": self.debug_info,
            "found": self.found,
            "unique": self.unique,
            "updated": self.updated,
            "without_update": self.without_update,
            "documents_written": self.documents_written,
            "cancelled": self.cancelled,
            "log_success": list(self.log_success),
            "log_warning": list(self.log_warning),
            "log_error": list(self.log_error),
            "sync_ok": [i.to_dict() for i in self.sync_ok],
            "sync_warning": [i.to_dict() for i in self.sync_warning],
            "sync_error": [i.to_dict() for i in self.sync_error],
            "ok_by_document": _by_doc(self.ok_by_document),
            "warning_by_document": _by_doc(self.warning_by_document),
            "error_by_document": _by_doc(self.error_by_document),
        }
