"""S3 error taxonomy.

Handlers raise these exceptions; the application-level exception handler in
``main.py`` renders them as S3 ``<Error>`` XML documents.
"""

from fastapi import Response

from webdav_s3_gateway.s3.xml import build_error_xml


class S3Error(Exception):
    """Base class for errors that are reported to the client as S3 XML."""

    status_code: int = 500
    code: str = "InternalError"
    default_message: str = "We encountered an internal error. Please try again."

    def __init__(
        self,
        message: str | None = None,
        resource: str = "",
        extra: dict[str, str] | None = None,
    ):
        self.message = message or self.default_message
        self.resource = resource
        self.extra = extra or {}
        super().__init__(self.message)

    def to_response(self, request_id: str = "") -> Response:
        """Render this error as an S3 XML response."""
        headers = {"x-amz-request-id": request_id} if request_id else None
        return Response(
            content=build_error_xml(self.code, self.message, self.resource, request_id, self.extra),
            status_code=self.status_code,
            media_type="application/xml",
            headers=headers,
        )


class AccessDenied(S3Error):
    status_code = 403
    code = "AccessDenied"
    default_message = "Access Denied"


class InvalidAccessKeyId(S3Error):
    status_code = 403
    code = "InvalidAccessKeyId"
    default_message = "The AWS Access Key Id you provided does not exist in our records."


class SignatureDoesNotMatch(S3Error):
    status_code = 403
    code = "SignatureDoesNotMatch"
    default_message = (
        "The request signature we calculated does not match the signature you provided. "
        "Check your key and signing method."
    )


class RequestTimeTooSkewed(S3Error):
    status_code = 403
    code = "RequestTimeTooSkewed"
    default_message = "The difference between the request time and the current time is too large."


class InvalidArgument(S3Error):
    status_code = 400
    code = "InvalidArgument"
    default_message = "Invalid Argument"


class MalformedXML(S3Error):
    status_code = 400
    code = "MalformedXML"
    default_message = "The XML you provided was not well-formed or did not validate against our published schema."


class MissingRequestBody(S3Error):
    status_code = 400
    code = "MissingRequestBodyError"
    default_message = "Request Body is empty."


class NoSuchKey(S3Error):
    status_code = 404
    code = "NoSuchKey"
    default_message = "The specified key does not exist."


class NoSuchBucket(S3Error):
    status_code = 404
    code = "NoSuchBucket"
    default_message = "The specified bucket does not exist."


class MethodNotAllowed(S3Error):
    status_code = 405
    code = "MethodNotAllowed"
    default_message = "The specified method is not allowed against this resource."


class InternalError(S3Error):
    pass
