"""Translate WebDAV PROPFIND listings into the S3 bucket listing model.

A depth-1 PROPFIND of ``{bucket}/photos/`` returns the collection itself
followed by its direct children:

    /dav/bucket/photos/            (collection, dropped)
    /dav/bucket/photos/2024/       (collection)
    /dav/bucket/photos/a.jpg
    /dav/bucket/photos/b.jpg

With prefix ``photos/`` and delimiter ``/`` this becomes the contents
``photos/a.jpg``, ``photos/b.jpg`` and the common prefix ``photos/2024/``.
Every resource contributes an object, a common prefix, or nothing; never
both.
"""

from typing import Iterable
from urllib.parse import urlsplit

from webdav_s3_gateway.models.s3 import CommonPrefix, ListBucketResult, S3Object, WebDAVResource

DEFAULT_MAX_KEYS = 1000


def href_to_key(href: str, bucket: str, base_path: str = "") -> str:
    """Turn a multistatus href into an object key relative to the bucket.

    Args:
        href: Absolute URL or path as reported by the server
        bucket: Bucket name, stripped when it is the first path segment
        base_path: Path of the WebDAV base URL, stripped when present

    Returns:
        The key, e.g. ``photos/a.jpg`` (collections keep a trailing slash)
    """
    path = urlsplit(href).path if "://" in href else href
    if not path.startswith("/"):
        path = "/" + path

    base_path = base_path.rstrip("/")
    if base_path and (path == base_path or path.startswith(base_path + "/")):
        path = path[len(base_path):]

    key = path.lstrip("/")
    if key == bucket:
        return ""
    if key.startswith(bucket + "/"):
        key = key[len(bucket) + 1:]
    return key


def _fold(key: str, prefix: str, delimiter: str) -> str | None:
    """Common prefix a key folds into, or None if it stays an object."""
    suffix = key[len(prefix):]
    if delimiter not in suffix:
        return None
    return prefix + suffix.split(delimiter)[0] + delimiter


def translate(
    resources: Iterable[WebDAVResource],
    bucket: str,
    prefix: str = "",
    delimiter: str = "",
    max_keys: int = DEFAULT_MAX_KEYS,
    *,
    base_path: str = "",
    start_after: str | None = None,
    list_type: int = 1,
) -> ListBucketResult:
    """Partition a PROPFIND result into S3 objects and common prefixes.

    The first resource is the queried collection and is skipped. Keys that
    do not start with ``prefix`` or sort at or before ``start_after`` are
    skipped as well. Contents are sorted by UTF-8 byte order and capped at
    ``max_keys``; common prefixes keep first-seen order and are not capped.
    """
    contents: list[S3Object] = []
    common_prefixes: list[CommonPrefix] = []
    seen_prefixes: set[str] = set()

    for index, resource in enumerate(resources):
        if index == 0:
            continue

        key = href_to_key(resource.href, bucket, base_path)
        if not key or not key.startswith(prefix):
            continue
        if start_after and key <= start_after:
            continue

        if resource.is_collection:
            if not delimiter:
                continue
            if not key.endswith(delimiter):
                key += delimiter
            common_prefix = _fold(key, prefix, delimiter)
        else:
            common_prefix = _fold(key, prefix, delimiter) if delimiter else None

        if common_prefix is not None:
            if common_prefix != prefix and common_prefix not in seen_prefixes:
                seen_prefixes.add(common_prefix)
                common_prefixes.append(CommonPrefix(prefix=common_prefix))
            continue

        if resource.is_collection:
            continue

        contents.append(
            S3Object(
                key=key,
                last_modified=resource.last_modified,
                etag=resource.etag,
                size=resource.content_length,
            )
        )

    contents.sort(key=lambda obj: obj.key.encode("utf-8"))

    is_truncated = len(contents) > max_keys
    contents = contents[:max_keys]

    return ListBucketResult(
        name=bucket,
        prefix=prefix,
        delimiter=delimiter,
        max_keys=max_keys,
        is_truncated=is_truncated,
        contents=contents,
        common_prefixes=common_prefixes,
        marker=start_after or "",
        next_marker=contents[-1].key if is_truncated and contents else None,
        list_type=list_type,
    )
