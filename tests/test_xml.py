"""Tests for S3 XML response builders."""

from datetime import datetime, timezone
from xml.etree import ElementTree as ET

from webdav_s3_gateway.models.s3 import CommonPrefix, ListBucketResult, S3Object
from webdav_s3_gateway.s3.xml import (
    S3_NAMESPACE,
    build_copy_object_result_xml,
    build_delete_result_xml,
    build_error_xml,
    build_list_bucket_result_xml,
    escape_xml,
    format_s3_timestamp,
)

NS = {"s3": S3_NAMESPACE}
TRICKY_KEY = "a&b<c>\"d'e"


def make_result(**overrides) -> ListBucketResult:
    values = dict(
        name="bucket",
        prefix="",
        delimiter="",
        max_keys=1000,
        is_truncated=False,
        contents=[
            S3Object(
                key="photos/a.jpg",
                last_modified=datetime(2024, 1, 15, 10, 30, 0, 123456, tzinfo=timezone.utc),
                etag="abc123",
                size=42,
            )
        ],
    )
    values.update(overrides)
    return ListBucketResult(**values)


class TestEscaping:
    """XML escaping of text content."""

    def test_escape_all_special_characters(self):
        assert escape_xml(TRICKY_KEY) == "a&amp;b&lt;c&gt;&quot;d&apos;e"

    def test_key_round_trips_through_parser(self):
        result = make_result(
            contents=[S3Object(key=TRICKY_KEY, last_modified=datetime.now(timezone.utc), etag="e", size=1)]
        )
        root = ET.fromstring(build_list_bucket_result_xml(result))
        assert root.find("s3:Contents/s3:Key", NS).text == TRICKY_KEY

    def test_error_message_round_trips(self):
        root = ET.fromstring(build_error_xml("NoSuchKey", "missing <key>", f"/bucket/{TRICKY_KEY}", "REQ1"))
        assert root.find("Message").text == "missing <key>"
        assert root.find("Resource").text == f"/bucket/{TRICKY_KEY}"


class TestTimestamp:
    def test_milliseconds_utc(self):
        dt = datetime(2024, 1, 15, 10, 30, 0, 123456, tzinfo=timezone.utc)
        assert format_s3_timestamp(dt) == "2024-01-15T10:30:00.123Z"

    def test_naive_treated_as_utc(self):
        assert format_s3_timestamp(datetime(2024, 1, 15)) == "2024-01-15T00:00:00.000Z"


class TestListBucketResult:
    """ListObjects v1 and v2 documents."""

    def test_v1_document(self):
        result = make_result(
            prefix="photos/",
            delimiter="/",
            is_truncated=True,
            common_prefixes=[CommonPrefix(prefix="photos/2024/")],
            marker="photos/0.jpg",
            next_marker="photos/a.jpg",
        )
        root = ET.fromstring(build_list_bucket_result_xml(result))

        assert root.tag == f"{{{S3_NAMESPACE}}}ListBucketResult"
        assert root.find("s3:Name", NS).text == "bucket"
        assert root.find("s3:Prefix", NS).text == "photos/"
        assert root.find("s3:Delimiter", NS).text == "/"
        assert root.find("s3:MaxKeys", NS).text == "1000"
        assert root.find("s3:IsTruncated", NS).text == "true"
        assert root.find("s3:Marker", NS).text == "photos/0.jpg"
        assert root.find("s3:NextMarker", NS).text == "photos/a.jpg"
        assert root.find("s3:KeyCount", NS) is None

        contents = root.find("s3:Contents", NS)
        assert contents.find("s3:Key", NS).text == "photos/a.jpg"
        assert contents.find("s3:LastModified", NS).text == "2024-01-15T10:30:00.123Z"
        assert contents.find("s3:ETag", NS).text == '"abc123"'
        assert contents.find("s3:Size", NS).text == "42"
        assert contents.find("s3:StorageClass", NS).text == "STANDARD"

        prefixes = [p.text for p in root.findall("s3:CommonPrefixes/s3:Prefix", NS)]
        assert prefixes == ["photos/2024/"]

    def test_v2_document(self):
        result = make_result(
            list_type=2,
            is_truncated=True,
            common_prefixes=[CommonPrefix(prefix="docs/")],
            marker="after",
            next_marker="photos/a.jpg",
        )
        root = ET.fromstring(build_list_bucket_result_xml(result))

        assert root.find("s3:KeyCount", NS).text == "2"
        assert root.find("s3:StartAfter", NS).text == "after"
        assert root.find("s3:NextContinuationToken", NS).text == "photos/a.jpg"
        assert root.find("s3:Marker", NS) is None

    def test_empty_listing(self):
        root = ET.fromstring(build_list_bucket_result_xml(make_result(contents=[])))
        assert root.find("s3:Contents", NS) is None
        assert root.find("s3:IsTruncated", NS).text == "false"


class TestOtherDocuments:
    def test_error_document(self):
        root = ET.fromstring(
            build_error_xml("SignatureDoesNotMatch", "no", "/b/k", "REQ1", extra={"StringToSign": "AWS4\nx"})
        )
        assert root.tag == "Error"
        assert root.find("Code").text == "SignatureDoesNotMatch"
        assert root.find("RequestId").text == "REQ1"
        assert root.find("StringToSign").text == "AWS4\nx"

    def test_error_document_optional_fields(self):
        root = ET.fromstring(build_error_xml("InternalError", "boom"))
        assert root.find("Resource") is None
        assert root.find("RequestId") is None

    def test_copy_object_result(self):
        root = ET.fromstring(build_copy_object_result_xml("e1", datetime(2024, 1, 15, tzinfo=timezone.utc)))
        assert root.find("s3:ETag", NS).text == '"e1"'
        assert root.find("s3:LastModified", NS).text == "2024-01-15T00:00:00.000Z"

    def test_delete_result(self):
        root = ET.fromstring(build_delete_result_xml(["a", TRICKY_KEY], [("c", "InternalError", "failed")]))
        assert [k.text for k in root.findall("s3:Deleted/s3:Key", NS)] == ["a", TRICKY_KEY]
        error = root.find("s3:Error", NS)
        assert error.find("s3:Key", NS).text == "c"
        assert error.find("s3:Code", NS).text == "InternalError"
