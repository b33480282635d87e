"""Pre-signed URL generation.

URLs are path-style (``{base_url}/{bucket}/{key}``) and signed for the host
of ``base_url``, so they are accepted by this gateway's own verifier. The
query carries the credential, date and expiry:

    X-Amz-Algorithm=AWS4-HMAC-SHA256
    X-Amz-Credential={access_key}/{date}/{region}/s3/aws4_request
    X-Amz-Date={YYYYMMDDTHHMMSSZ}
    X-Amz-Expires={seconds}
    X-Amz-SignedHeaders=host
    X-Amz-Signature={hex}            (appended after signing)
"""

from datetime import datetime, timezone
from urllib.parse import urlsplit

from webdav_s3_gateway.models.s3 import Credential
from webdav_s3_gateway.s3.sigv4 import (
    ALGORITHM,
    AMZ_DATE_FORMAT,
    MAX_PRESIGNED_EXPIRES,
    UNSIGNED_PAYLOAD,
    canonicalize,
    credential_scope,
    sign,
    string_to_sign,
    uri_encode,
)

DEFAULT_EXPIRES = 86400  # 24 hours


def create_presigned_url(
    credential: Credential,
    base_url: str,
    bucket: str,
    key: str,
    expires_in: int = DEFAULT_EXPIRES,
    now: datetime | None = None,
) -> str:
    """Create a pre-signed GET URL for ``bucket``/``key``.

    Args:
        credential: Credential to sign with
        base_url: Public URL of the gateway (scheme, host and optional path)
        bucket: S3 bucket name
        key: Object key
        expires_in: URL lifetime in seconds (1-604800, default 86400)
        now: Signing time, defaults to the wall clock

    Returns:
        The pre-signed URL

    Raises:
        ValueError: If expires_in is out of range or base_url has no host
    """
    if not 0 < expires_in <= MAX_PRESIGNED_EXPIRES:
        raise ValueError(f"expires_in must be between 1 and {MAX_PRESIGNED_EXPIRES} seconds")

    parts = urlsplit(base_url)
    if not parts.netloc:
        raise ValueError(f"base_url has no host: {base_url}")

    now = now or datetime.now(timezone.utc)
    amz_date = now.astimezone(timezone.utc).strftime(AMZ_DATE_FORMAT)
    date_stamp = amz_date[:8]
    scope = credential_scope(date_stamp, credential.region, credential.service)

    path = f"{parts.path.rstrip('/')}/{bucket}/{key}"
    query = "&".join(
        f"{name}={uri_encode(value)}"
        for name, value in [
            ("X-Amz-Algorithm", ALGORITHM),
            ("X-Amz-Credential", f"{credential.access_key_id}/{scope}"),
            ("X-Amz-Date", amz_date),
            ("X-Amz-Expires", str(expires_in)),
            ("X-Amz-SignedHeaders", "host"),
        ]
    )

    canonical = canonicalize(
        method="GET",
        raw_path=path,
        raw_query=query,
        headers={"host": parts.netloc},
        signed_header_names=["host"],
        payload_hash=UNSIGNED_PAYLOAD,
    )
    signature = sign(credential, date_stamp, string_to_sign(ALGORITHM, amz_date, scope, canonical))

    return f"{parts.scheme}://{parts.netloc}{canonical.canonical_uri}?{query}&X-Amz-Signature={signature}"
