"""S3-compatible API gateway in front of a WebDAV backing store."""

__version__ = "0.1.0"
