"""
Client for the mapping service bulk value lookup.

One POST resolves any number of fact ids::

    POST {base}/api/v2/projects/{project}/datastore/values?locale=en&locale=nl
    <request><item>fact-1</item><item>fact-2</item></request>

    <response>
      <item id="fact-1" result="ok">
        <localisedvalue locale="en">1,234</localisedvalue>
      </item>
      <item id="fact-2" result="nodatasource"/>
    </response>

The parsed response is always a (possibly empty) mapping of fact id to
BulkLookupItem, whatever the number of ids requested.
"""

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Optional, Protocol
from urllib.parse import quote

import httpx

from sdesync.cache.models import result_code_to_status
from sdesync.config import SyncSettings
from sdesync.errors import ConfigError, UpstreamError

logger = logging.getLogger(__name__)

VALUES_ENDPOINT = "/api/v2/projects/{project_id}/datastore/values"
USER_HEADER = "X-User-Id"


@dataclass
class BulkLookupItem:
    """Mapping service answer for one fact id."""
    id: str
    result: str
    values: dict[str, str] = field(default_factory=dict)
    message: str = ""

    @property
    def status(self) -> str:
        return result_code_to_status(self.result)


class BulkLookupClient(Protocol):
    """Anything that can resolve a set of fact ids in one round trip."""

    def lookup(self, project_id: str, fact_ids: list[str],
               languages: list[str]) -> dict[str, BulkLookupItem]:
        ...


def build_request_body(fact_ids: list[str]) -> bytes:
    root = ET.Element("request")
    for fact_id in fact_ids:
        ET.SubElement(root, "item").text = fact_id
    return ET.tostring(root, encoding="utf-8")


def parse_lookup_response(data: bytes) -> dict[str, BulkLookupItem]:
    """Parse a bulk lookup response.

    Localised values (``localisedvalue/@locale``) win over plain
    ``value/@lang`` nodes.

    Raises:
        UpstreamError: The payload is not a lookup response.
    """
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        raise UpstreamError(f"Malformed response from the mapping service: {e}") from e

    if root.tag == "error" or root.find("error") is not None:
        message = "".join(root.itertext()).strip()
        raise UpstreamError(f"Mapping service returned an error: {message[:500]}")
    if root.tag != "response":
        raise UpstreamError(f"Unexpected mapping service response root <{root.tag}>")

    items: dict[str, BulkLookupItem] = {}
    for node in root.findall("item"):
        fact_id = node.get("id", "")
        if not fact_id:
            logger.warning("Ignoring mapping service item without id")
            continue

        values: dict[str, str] = {}
        for value_node in node.findall("value"):
            lang = value_node.get("lang")
            if lang:
                values[lang] = value_node.text or ""
        for localised in node.findall("localisedvalue"):
            locale = localised.get("locale")
            if locale:
                values[locale] = localised.text or ""

        items[fact_id] = BulkLookupItem(
            id=fact_id,
            result=(node.get("result") or "unknown").lower(),
            values=values,
            message=(node.findtext("message") or "").strip(),
        )
    return items


class MappingServiceClient:
    """httpx-based BulkLookupClient for the mapping service."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 1800.0,
        always_refresh: bool = False,
        system_user: str = "",
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not base_url:
            raise ConfigError("Mapping service URL is not configured")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.always_refresh = always_refresh
        self.system_user = system_user
        self._client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, settings: SyncSettings,
                      transport: Optional[httpx.BaseTransport] = None) -> "MappingServiceClient":
        return cls(
            base_url=settings.mapping_service_url,
            timeout=settings.request_timeout,
            always_refresh=settings.always_refresh,
            system_user=settings.system_user,
            transport=transport,
        )

    def lookup(self, project_id: str, fact_ids: list[str],
               languages: list[str]) -> dict[str, BulkLookupItem]:
        """Resolve fact values for all languages in one request.

        Raises:
            UpstreamError: Timeout, connection problem, error status or
                malformed payload.
        """
        if not fact_ids:
            return {}

        params: list[tuple[str, str]] = [("locale", lang) for lang in languages]
        if self.always_refresh:
            params.append(("refresh", "true"))

        headers = {"Content-Type": "text/xml", "Accept": "text/xml"}
        if self.system_user:
            headers[USER_HEADER] = self.system_user

        url = VALUES_ENDPOINT.format(project_id=quote(project_id, safe=""))
        logger.info(f"Bulk value lookup for {len(fact_ids)} facts in project {project_id}")
        try:
            response = self._client.post(url, params=params, content=build_request_body(fact_ids),
                                         headers=headers)
        except httpx.TimeoutException as e:
            raise UpstreamError(f"Mapping service did not answer within {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Mapping service unreachable: {e}") from e

        if response.status_code != 200:
            raise UpstreamError(f"Mapping service error {response.status_code}: {response.text[:500]}")

        items = parse_lookup_response(response.content)
        logger.debug(f"Mapping service returned {len(items)} items")
        return items

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "MappingServiceClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
