"""Parser for WebDAV PROPFIND multistatus responses.

A response body to a PROPFIND request is of the form (indented for
readability):

    <?xml version="1.0" encoding="UTF-8"?>
    <D:multistatus xmlns:D="DAV:">
        <D:response>
            <D:href>/bucket/path/to/resource</D:href>
            <D:propstat>
                <D:prop>
                    <D:resourcetype><D:collection/></D:resourcetype>
                    <D:getlastmodified>Fri, 27 Jan 2023 13:59:01 GMT</D:getlastmodified>
                    <D:getcontentlength>12345</D:getcontentlength>
                </D:prop>
                <D:status>HTTP/1.1 200 OK</D:status>
            </D:propstat>
        </D:response>
        ...
    </D:multistatus>

Servers disagree on namespace prefixes (``D:``, ``d:``, default namespace)
so elements are matched by local name only. Parsing is incremental: when
the body is truncated or malformed, every <response> completed before the
error is kept and the rest is dropped.
"""

import hashlib
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from urllib.parse import unquote
from xml.etree import ElementTree as ET

import structlog

from webdav_s3_gateway.models.s3 import WebDAVResource

logger = structlog.get_logger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"

PROPFIND_PROPERTIES = (
    "displayname",
    "getcontentlength",
    "getlastmodified",
    "getetag",
    "getcontenttype",
    "resourcetype",
)


def build_propfind_body() -> str:
    """Build PROPFIND request XML asking for the properties the gateway needs."""
    props = "\n".join(f"    <D:{name}/>" for name in PROPFIND_PROPERTIES)
    return (
        '<?xml version="1.0" encoding="utf-8"?>\n'
        '<D:propfind xmlns:D="DAV:">\n'
        "  <D:prop>\n"
        f"{props}\n"
        "  </D:prop>\n"
        "</D:propfind>"
    )


def _local_name(element: ET.Element) -> str:
    """Tag name without namespace, lowercased."""
    return element.tag.rsplit("}", 1)[-1].lower()


def _child(element: ET.Element, name: str) -> ET.Element | None:
    for child in element:
        if _local_name(child) == name:
            return child
    return None


def _text(element: ET.Element | None) -> str:
    if element is None:
        return ""
    return "".join(element.itertext()).strip()


def synthesize_etag(href: str, last_modified: datetime, size: int) -> str:
    """Display-only ETag for servers that do not report ``getetag``.

    Derived from href, modification time and size; it says nothing about
    the content and must not be used for integrity checks.
    """
    data = f"{href}-{int(last_modified.timestamp() * 1000)}-{size}"
    return hashlib.md5(data.encode("utf-8"), usedforsecurity=False).hexdigest()


def _collect_props(response: ET.Element) -> dict[str, ET.Element] | None:
    """Merge <prop> children of every successful <propstat> block.

    Returns None when the response has no usable <prop> at all.
    """
    props: dict[str, ET.Element] | None = None
    for propstat in response:
        if _local_name(propstat) != "propstat":
            continue
        status = _text(_child(propstat, "status")).split()
        if len(status) >= 2 and not status[1].startswith("2"):
            # e.g. "HTTP/1.1 404 Not Found" for properties the server lacks
            continue
        prop = _child(propstat, "prop")
        if prop is None:
            continue
        if props is None:
            props = {}
        for item in prop:
            props.setdefault(_local_name(item), item)
    return props


def _parse_http_date(value: str) -> datetime:
    dt = parsedate_to_datetime(value)
    if dt is None:
        raise ValueError(f"Invalid date: {value}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_response(response: ET.Element) -> WebDAVResource | None:
    """Convert one <response> element into a WebDAVResource.

    Returns None for entries without href or properties.

    Raises:
        ValueError: If a property value is malformed
    """
    href = _text(_child(response, "href"))
    if not href:
        return None
    href = unquote(href)

    props = _collect_props(response)
    if props is None:
        return None

    resourcetype = props.get("resourcetype")
    is_collection = resourcetype is not None and _child(resourcetype, "collection") is not None

    display_name = _text(props.get("displayname")) or href.rstrip("/").rsplit("/", 1)[-1]

    content_length_str = _text(props.get("getcontentlength"))
    content_length = int(content_length_str) if content_length_str else 0
    if content_length < 0:
        raise ValueError(f"Negative content length: {content_length}")

    last_modified_str = _text(props.get("getlastmodified"))
    try:
        last_modified = _parse_http_date(last_modified_str) if last_modified_str else datetime.now(timezone.utc)
    except (TypeError, IndexError) as e:
        raise ValueError(f"Invalid date: {last_modified_str}") from e

    etag = _text(props.get("getetag"))
    if etag.startswith("W/"):
        etag = etag[2:]
    if len(etag) >= 2 and etag.startswith('"') and etag.endswith('"'):
        etag = etag[1:-1]

    return WebDAVResource(
        href=href,
        is_collection=is_collection,
        content_length=content_length,
        last_modified=last_modified,
        etag=etag or synthesize_etag(href, last_modified, content_length),
        content_type=_text(props.get("getcontenttype")) or DEFAULT_CONTENT_TYPE,
        display_name=display_name,
    )


def parse_multistatus(body: bytes | str) -> list[WebDAVResource]:
    """Parse a PROPFIND multistatus body into WebDAV resources.

    Entries that cannot be parsed are dropped; a malformed document yields
    the entries completed before the error.

    Args:
        body: The raw response body

    Returns:
        Resources in document order
    """
    resources: list[WebDAVResource] = []
    parser = ET.XMLPullParser(events=("end",))

    def drain() -> None:
        for _, element in parser.read_events():
            if _local_name(element) != "response":
                continue
            try:
                resource = parse_response(element)
            except ValueError as e:
                logger.warning("webdav_entry_dropped", error=str(e))
                resource = None
            if resource is not None:
                resources.append(resource)
            element.clear()

    try:
        parser.feed(body)
        drain()
        parser.close()
        drain()
    except ET.ParseError as e:
        logger.warning("webdav_multistatus_parse_error", error=str(e), parsed_entries=len(resources))

    return resources
