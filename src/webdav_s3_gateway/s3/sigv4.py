"""AWS Signature Version 4 signing and verification.

Implements the SigV4 algorithm for both directions:
- signing: pre-signed URLs and ``Authorization`` headers
- verification: inbound requests using either an ``Authorization`` header
  or pre-signed query parameters

Signing and verification share ``canonicalize()``, so a URL produced by
``presign.create_presigned_url`` is checked with exactly the rules it was
built with.

References:
    https://docs.aws.amazon.com/IAM/latest/UserGuide/create-signed-request.html
"""

import hashlib
import hmac
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Iterable, Mapping
from urllib.parse import quote, unquote

from webdav_s3_gateway.models.s3 import CanonicalRequest, Credential, SignatureComponents

ALGORITHM = "AWS4-HMAC-SHA256"
SCOPE_TERMINATOR = "aws4_request"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
AMZ_DATE_FORMAT = "%Y%m%dT%H%M%SZ"
MAX_PRESIGNED_EXPIRES = 604800  # 7 days in seconds
# How far in the future a pre-signed X-Amz-Date may lie
PRESIGNED_CLOCK_SKEW_SECONDS = 900

# Example: AWS4-HMAC-SHA256 Credential=AKID/20231230/us-east-1/s3/aws4_request,
#          SignedHeaders=host;x-amz-date, Signature=abcdef...
AUTH_HEADER_RE = re.compile(
    r"^AWS4-HMAC-SHA256\s+"
    r"Credential=(?P<credential>[^,\s]+),\s*"
    r"SignedHeaders=(?P<signed_headers>[^,\s]+),\s*"
    r"Signature=(?P<signature>[0-9a-fA-F]+)\s*$"
)


class RejectReason(str, Enum):
    """Why a request failed verification."""

    MISSING_AUTH = "missing_authorization"
    MALFORMED_AUTH = "malformed_authorization"
    UNKNOWN_ACCESS_KEY = "unknown_access_key"
    WRONG_REGION = "wrong_region"
    WRONG_SERVICE = "wrong_service"
    MISSING_DATE = "missing_date"
    INVALID_DATE = "invalid_date"
    SCOPE_DATE_MISMATCH = "scope_date_mismatch"
    MISSING_SIGNED_HEADER = "missing_signed_header"
    REQUEST_TIME_SKEWED = "request_time_skewed"
    EXPIRED = "expired"
    SIGNATURE_MISMATCH = "signature_mismatch"


@dataclass(frozen=True)
class SignableRequest:
    """The parts of an HTTP request that take part in SigV4.

    ``path`` is the percent-decoded request path, ``query`` the raw query
    string exactly as received.
    """

    method: str
    path: str
    query: str
    headers: Mapping[str, str]


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of ``verify()``: either accepted or rejected with a reason.

    ``diagnostics`` is only set on signature mismatches and holds every
    canonicalization intermediate. It is meant for server-side logs, never
    for the unauthenticated caller.
    """

    accepted: bool
    reason: RejectReason | None = None
    message: str = ""
    components: SignatureComponents | None = None
    diagnostics: dict[str, str] | None = None

    @classmethod
    def accept(cls, components: SignatureComponents) -> "VerificationResult":
        return cls(accepted=True, components=components)

    @classmethod
    def reject(
        cls,
        reason: RejectReason,
        message: str,
        components: SignatureComponents | None = None,
        diagnostics: dict[str, str] | None = None,
    ) -> "VerificationResult":
        return cls(
            accepted=False,
            reason=reason,
            message=message,
            components=components,
            diagnostics=diagnostics,
        )


# ============================================================================
# Primitives
# ============================================================================


def _hmac(key: bytes, msg: str) -> bytes:
    """HMAC-SHA256 signing helper"""
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def sha256_hex(data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def derive_signing_key(secret_key: str, date_stamp: str, region: str, service: str) -> bytes:
    """Derive AWS Sig V4 signing key.

    The signing key is derived as:
        kDate = HMAC("AWS4" + secret_key, date)
        kRegion = HMAC(kDate, region)
        kService = HMAC(kRegion, service)
        kSigning = HMAC(kService, "aws4_request")
    """
    k_date = _hmac(f"AWS4{secret_key}".encode("utf-8"), date_stamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, SCOPE_TERMINATOR)


def sign(credential: Credential, date_stamp: str, string_to_sign: str) -> str:
    """Return the lowercase hex signature of ``string_to_sign``."""
    signing_key = derive_signing_key(credential.secret_key, date_stamp, credential.region, credential.service)
    return hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()


def credential_scope(date_stamp: str, region: str, service: str) -> str:
    return f"{date_stamp}/{region}/{service}/{SCOPE_TERMINATOR}"


def uri_encode(value: str, encode_slash: bool = True) -> str:
    """URI-encode a string according to AWS rules.

    Only the RFC 3986 unreserved characters ``A-Z a-z 0-9 - _ . ~`` are left
    as they are; ``! ' ( ) *`` are encoded too. ``/`` is kept when
    ``encode_slash`` is False (paths) and encoded otherwise (query values).
    """
    return quote(value, safe="" if encode_slash else "/")


# ============================================================================
# Canonicalization
# ============================================================================


def _lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Lowercase header names; repeated headers are joined with commas."""
    lowered: dict[str, str] = {}
    for name, value in headers.items():
        name = name.lower()
        if name in lowered:
            lowered[name] = f"{lowered[name]},{value}"
        else:
            lowered[name] = value
    return lowered


def canonical_uri(path: str) -> str:
    """Encode each path segment independently, never the separating slashes."""
    if not path:
        return "/"
    encoded = "/".join(uri_encode(segment) for segment in path.split("/"))
    if not encoded.startswith("/"):
        encoded = "/" + encoded
    return encoded


def parse_query(raw_query: str) -> list[tuple[str, str]]:
    """Split a raw query string into percent-decoded (name, value) pairs.

    ``+`` is left alone: SigV4 clients encode spaces as ``%20``.
    """
    pairs = []
    for part in raw_query.split("&"):
        if not part:
            continue
        name, _, value = part.partition("=")
        pairs.append((unquote(name), unquote(value)))
    return pairs


def canonical_query_string(raw_query: str, exclude: Iterable[str] = ()) -> str:
    """Sort query parameters by encoded name, then encoded value."""
    excluded = set(exclude)
    encoded = sorted(
        (uri_encode(name), uri_encode(value))
        for name, value in parse_query(raw_query)
        if name not in excluded
    )
    return "&".join(f"{name}={value}" for name, value in encoded)


def canonicalize(
    method: str,
    raw_path: str,
    raw_query: str,
    headers: Mapping[str, str],
    signed_header_names: Iterable[str],
    payload_hash: str,
    exclude_query: Iterable[str] = (),
) -> CanonicalRequest:
    """Build the canonical request for a SigV4 signature.

    Signed headers keep the order they are given in; each value is trimmed
    and internal whitespace runs collapse to a single space.
    """
    lowered = _lower_headers(headers)
    names = [name.strip().lower() for name in signed_header_names]

    canonical_headers = "".join(f"{name}:{' '.join(lowered.get(name, '').split())}\n" for name in names)

    return CanonicalRequest(
        method=method.upper(),
        canonical_uri=canonical_uri(raw_path),
        canonical_query_string=canonical_query_string(raw_query, exclude_query),
        canonical_headers=canonical_headers,
        signed_headers=";".join(names),
        payload_hash=payload_hash,
    )


def string_to_sign(
    algorithm: str,
    request_datetime: str,
    scope: str,
    canonical_request: CanonicalRequest | str,
) -> str:
    """Join algorithm, timestamp, scope and the hashed canonical request."""
    return "\n".join([algorithm, request_datetime, scope, sha256_hex(str(canonical_request))])


# ============================================================================
# Authorization header
# ============================================================================


def parse_authorization_header(auth_header: str) -> SignatureComponents | None:
    """Parse AWS4-HMAC-SHA256 Authorization header.

    Expected format:
        AWS4-HMAC-SHA256
        Credential={access_key}/{date}/{region}/{service}/aws4_request,
        SignedHeaders={header_list},
        Signature={signature}

    Returns:
        Parsed components or None if the header is malformed.
    """
    match = AUTH_HEADER_RE.match(auth_header.strip())
    if not match:
        return None

    cred_parts = match.group("credential").split("/")
    if len(cred_parts) != 5 or cred_parts[4] != SCOPE_TERMINATOR:
        return None

    access_key, date_stamp, region, service, _ = cred_parts
    if not re.fullmatch(r"\d{8}", date_stamp):
        return None

    return SignatureComponents(
        algorithm=ALGORITHM,
        access_key_id=access_key,
        date_stamp=date_stamp,
        region=region,
        service=service,
        signed_headers=[h.lower() for h in match.group("signed_headers").split(";") if h],
        signature=match.group("signature").lower(),
    )


def build_authorization_header(
    credential: Credential,
    request: SignableRequest,
    signed_header_names: Iterable[str],
    amz_date: str,
    payload_hash: str = UNSIGNED_PAYLOAD,
) -> str:
    """Sign ``request`` and return the matching ``Authorization`` header value.

    ``request.headers`` must already carry every header listed in
    ``signed_header_names`` (typically ``host`` and ``x-amz-date``).
    """
    date_stamp = amz_date[:8]
    scope = credential_scope(date_stamp, credential.region, credential.service)
    canonical = canonicalize(
        request.method, request.path, request.query, request.headers, signed_header_names, payload_hash
    )
    signature = sign(credential, date_stamp, string_to_sign(ALGORITHM, amz_date, scope, canonical))
    return (
        f"{ALGORITHM} Credential={credential.access_key_id}/{scope}, "
        f"SignedHeaders={canonical.signed_headers}, Signature={signature}"
    )


# ============================================================================
# Verification
# ============================================================================


def _parse_amz_date(value: str) -> datetime | None:
    try:
        return datetime.strptime(value, AMZ_DATE_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _http_date_to_amz_date(value: str) -> str | None:
    """Convert an RFC 7231 ``Date`` header into ``YYYYMMDDTHHMMSSZ``."""
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(AMZ_DATE_FORMAT)


def _check_scope(components: SignatureComponents, credential: Credential) -> VerificationResult | None:
    if components.access_key_id != credential.access_key_id:
        return VerificationResult.reject(
            RejectReason.UNKNOWN_ACCESS_KEY, "Invalid access key", components
        )
    if components.region != credential.region:
        return VerificationResult.reject(
            RejectReason.WRONG_REGION, f"Invalid region: {components.region}", components
        )
    if components.service != credential.service:
        return VerificationResult.reject(
            RejectReason.WRONG_SERVICE, f"Invalid service: {components.service}", components
        )
    return None


def _check_scope_date(components: SignatureComponents, request_datetime: str) -> VerificationResult | None:
    """The credential scope must name the same day as the request timestamp."""
    if request_datetime[:8] != components.date_stamp:
        return VerificationResult.reject(
            RejectReason.SCOPE_DATE_MISMATCH,
            f"Credential scope date {components.date_stamp} does not match request date {request_datetime}",
            components,
        )
    return None


def _check_signature(
    request: SignableRequest,
    credential: Credential,
    components: SignatureComponents,
    request_datetime: str,
    payload_hash: str,
    exclude_query: Iterable[str] = (),
) -> VerificationResult:
    lowered = _lower_headers(request.headers)
    for name in components.signed_headers:
        if name not in lowered:
            return VerificationResult.reject(
                RejectReason.MISSING_SIGNED_HEADER, f"Missing signed header: {name}", components
            )

    canonical = canonicalize(
        request.method,
        request.path,
        request.query,
        lowered,
        components.signed_headers,
        payload_hash,
        exclude_query,
    )
    to_sign = string_to_sign(components.algorithm, request_datetime, components.credential_scope, canonical)
    expected = sign(credential, components.date_stamp, to_sign)

    if hmac.compare_digest(expected, components.signature):
        return VerificationResult.accept(components)

    return VerificationResult.reject(
        RejectReason.SIGNATURE_MISMATCH,
        "Signature mismatch",
        components,
        diagnostics={
            "canonical_request": str(canonical),
            "string_to_sign": to_sign,
            "expected_signature": expected,
            "provided_signature": components.signature,
        },
    )


def _verify_header_auth(
    request: SignableRequest,
    credential: Credential,
    max_age_seconds: int | None,
    now: datetime,
) -> VerificationResult:
    headers = _lower_headers(request.headers)

    auth_header = headers.get("authorization")
    if not auth_header:
        return VerificationResult.reject(RejectReason.MISSING_AUTH, "Missing Authorization header")

    components = parse_authorization_header(auth_header)
    if components is None:
        return VerificationResult.reject(RejectReason.MALFORMED_AUTH, "Invalid Authorization header format")

    rejected = _check_scope(components, credential)
    if rejected:
        return rejected

    amz_date = headers.get("x-amz-date")
    if amz_date:
        request_datetime = amz_date.strip()
        if _parse_amz_date(request_datetime) is None:
            return VerificationResult.reject(
                RejectReason.INVALID_DATE, f"Invalid x-amz-date header: {amz_date}", components
            )
    elif headers.get("date"):
        request_datetime = _http_date_to_amz_date(headers["date"])
        if request_datetime is None:
            return VerificationResult.reject(
                RejectReason.INVALID_DATE, f"Invalid Date header: {headers['date']}", components
            )
    else:
        return VerificationResult.reject(RejectReason.MISSING_DATE, "Missing date header", components)

    rejected = _check_scope_date(components, request_datetime)
    if rejected:
        return rejected

    if max_age_seconds:
        age_seconds = abs((now - _parse_amz_date(request_datetime)).total_seconds())
        if age_seconds > max_age_seconds:
            return VerificationResult.reject(
                RejectReason.REQUEST_TIME_SKEWED,
                f"Request time {request_datetime} is {int(age_seconds)}s away from server time",
                components,
            )

    payload_hash = headers.get("x-amz-content-sha256") or UNSIGNED_PAYLOAD
    return _check_signature(request, credential, components, request_datetime, payload_hash)


def _verify_presigned(
    request: SignableRequest,
    credential: Credential,
    now: datetime,
) -> VerificationResult:
    params = dict(parse_query(request.query))

    required = ("X-Amz-Credential", "X-Amz-Date", "X-Amz-Expires", "X-Amz-SignedHeaders", "X-Amz-Signature")
    missing = [name for name in required if not params.get(name)]
    if params.get("X-Amz-Algorithm") != ALGORITHM or missing:
        return VerificationResult.reject(
            RejectReason.MALFORMED_AUTH, "Invalid pre-signed URL query parameters"
        )

    cred_parts = params["X-Amz-Credential"].split("/")
    if len(cred_parts) != 5 or cred_parts[4] != SCOPE_TERMINATOR:
        return VerificationResult.reject(RejectReason.MALFORMED_AUTH, "Invalid X-Amz-Credential")
    if not re.fullmatch(r"[0-9a-fA-F]+", params["X-Amz-Signature"]):
        return VerificationResult.reject(RejectReason.MALFORMED_AUTH, "Invalid X-Amz-Signature")

    components = SignatureComponents(
        algorithm=ALGORITHM,
        access_key_id=cred_parts[0],
        date_stamp=cred_parts[1],
        region=cred_parts[2],
        service=cred_parts[3],
        signed_headers=[h.lower() for h in params["X-Amz-SignedHeaders"].split(";") if h],
        signature=params["X-Amz-Signature"].lower(),
    )

    rejected = _check_scope(components, credential)
    if rejected:
        return rejected

    try:
        expires = int(params["X-Amz-Expires"])
    except ValueError:
        return VerificationResult.reject(RejectReason.MALFORMED_AUTH, "Invalid X-Amz-Expires", components)
    if not 0 < expires <= MAX_PRESIGNED_EXPIRES:
        return VerificationResult.reject(RejectReason.MALFORMED_AUTH, "Invalid X-Amz-Expires", components)

    request_datetime = params["X-Amz-Date"]
    signed_at = _parse_amz_date(request_datetime)
    if signed_at is None:
        return VerificationResult.reject(
            RejectReason.INVALID_DATE, f"Invalid X-Amz-Date: {request_datetime}", components
        )
    rejected = _check_scope_date(components, request_datetime)
    if rejected:
        return rejected
    if (signed_at - now).total_seconds() > PRESIGNED_CLOCK_SKEW_SECONDS:
        return VerificationResult.reject(
            RejectReason.REQUEST_TIME_SKEWED,
            f"X-Amz-Date {request_datetime} is in the future",
            components,
        )
    if (now - signed_at).total_seconds() > expires:
        return VerificationResult.reject(RejectReason.EXPIRED, "Request has expired", components)

    return _check_signature(
        request,
        credential,
        components,
        request_datetime,
        UNSIGNED_PAYLOAD,
        exclude_query=("X-Amz-Signature",),
    )


def is_presigned(request: SignableRequest) -> bool:
    return any(name == "X-Amz-Algorithm" for name, _ in parse_query(request.query))


def verify(
    request: SignableRequest,
    credential: Credential,
    *,
    max_age_seconds: int | None = None,
    now: datetime | None = None,
) -> VerificationResult:
    """Verify that ``request`` carries a valid SigV4 signature for ``credential``.

    Dispatches to pre-signed URL verification when ``X-Amz-Algorithm`` is in
    the query string, header-based verification otherwise. Malformed input
    yields a rejected result; this function does not raise for it.

    Args:
        request: The request to verify
        credential: The locally held credential
        max_age_seconds: Reject header-signed requests whose timestamp is
            further than this from ``now`` (None or 0 disables the check)
        now: Current time, defaults to the wall clock

    Returns:
        VerificationResult, accepted or rejected with a reason
    """
    now = now or datetime.now(timezone.utc)
    if is_presigned(request):
        return _verify_presigned(request, credential, now)
    return _verify_header_auth(request, credential, max_age_seconds, now)
