"""S3 XML response builders.

All text content is escaped for the five XML special characters, so keys
such as ``a&b<c>"d'`` round-trip through any conforming XML parser.
"""

from datetime import datetime, timezone
from typing import Iterable
from xml.sax.saxutils import escape

from webdav_s3_gateway.models.s3 import ListBucketResult

S3_NAMESPACE = "http://s3.amazonaws.com/doc/2006-03-01/"
XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'

_QUOTE_ENTITIES = {'"': "&quot;", "'": "&apos;"}


def escape_xml(value: str) -> str:
    """Escape ``& < > " '`` for use in XML text content."""
    return escape(value, _QUOTE_ENTITIES)


def format_s3_timestamp(dt: datetime) -> str:
    """Format datetime for S3 XML response (ISO 8601, milliseconds, UTC)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def _element(name: str, text: str) -> str:
    return f"<{name}>{escape_xml(text)}</{name}>"


def build_list_bucket_result_xml(result: ListBucketResult) -> str:
    """Build S3 ListBucketResult XML response (ListObjects v1 and v2)."""
    parts = [
        XML_DECLARATION,
        f'<ListBucketResult xmlns="{S3_NAMESPACE}">',
        _element("Name", result.name),
        _element("Prefix", result.prefix),
        _element("Delimiter", result.delimiter),
        f"<MaxKeys>{result.max_keys}</MaxKeys>",
        f"<IsTruncated>{str(result.is_truncated).lower()}</IsTruncated>",
    ]

    if result.list_type == 2:
        parts.append(f"<KeyCount>{len(result.contents) + len(result.common_prefixes)}</KeyCount>")
        if result.marker:
            parts.append(_element("StartAfter", result.marker))
        if result.next_marker:
            parts.append(_element("NextContinuationToken", result.next_marker))
    else:
        parts.append(_element("Marker", result.marker))
        if result.next_marker:
            parts.append(_element("NextMarker", result.next_marker))

    for obj in result.contents:
        parts.append(
            "<Contents>"
            + _element("Key", obj.key)
            + _element("LastModified", format_s3_timestamp(obj.last_modified))
            + _element("ETag", f'"{obj.etag}"')
            + f"<Size>{obj.size}</Size>"
            + _element("StorageClass", obj.storage_class)
            + "</Contents>"
        )

    for common_prefix in result.common_prefixes:
        parts.append("<CommonPrefixes>" + _element("Prefix", common_prefix.prefix) + "</CommonPrefixes>")

    parts.append("</ListBucketResult>")
    return "\n".join(parts)


def build_error_xml(
    code: str,
    message: str,
    resource: str = "",
    request_id: str = "",
    extra: dict[str, str] | None = None,
) -> str:
    """Build S3 error XML response.

    ``extra`` adds further elements after the standard ones, e.g. the
    ``CanonicalRequest`` and ``StringToSign`` of a signature mismatch.
    """
    parts = [XML_DECLARATION, "<Error>", _element("Code", code), _element("Message", message)]
    if resource:
        parts.append(_element("Resource", resource))
    if request_id:
        parts.append(_element("RequestId", request_id))
    for name, value in (extra or {}).items():
        parts.append(_element(name, value))
    parts.append("</Error>")
    return "\n".join(parts)


def build_copy_object_result_xml(etag: str, last_modified: datetime) -> str:
    """Build S3 CopyObjectResult XML response."""
    return "\n".join(
        [
            XML_DECLARATION,
            f'<CopyObjectResult xmlns="{S3_NAMESPACE}">',
            _element("LastModified", format_s3_timestamp(last_modified)),
            _element("ETag", f'"{etag}"'),
            "</CopyObjectResult>",
        ]
    )


def build_delete_result_xml(
    deleted: Iterable[str],
    errors: Iterable[tuple[str, str, str]],
) -> str:
    """Build S3 DeleteResult XML for batch deletes.

    ``errors`` holds ``(key, code, message)`` triples.
    """
    parts = [XML_DECLARATION, f'<DeleteResult xmlns="{S3_NAMESPACE}">']
    for key in deleted:
        parts.append("<Deleted>" + _element("Key", key) + "</Deleted>")
    for key, code, message in errors:
        parts.append(
            "<Error>" + _element("Key", key) + _element("Code", code) + _element("Message", message) + "</Error>"
        )
    parts.append("</DeleteResult>")
    return "\n".join(parts)
