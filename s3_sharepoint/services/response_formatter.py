"""S3-style response payloads: ListBucketResult XML, Error XML, object headers."""

from datetime import UTC, datetime
from xml.etree import ElementTree as ET

from fastapi.responses import Response

from s3_sharepoint.core.exceptions import GatewayError, RateLimitError
from s3_sharepoint.core.sharepoint.client import RemoteItem
from s3_sharepoint.schemas.objects import ObjectListing

S3_NAMESPACE = "http://s3.amazonaws.com/doc/2006-03-01/"
XML_MEDIA_TYPE = "application/xml"
STORAGE_CLASS = "STANDARD"


def format_s3_timestamp(dt: datetime) -> str:
    """Format datetime for S3 XML responses (ISO 8601, millisecond, UTC)."""
    return dt.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def format_http_date(dt: datetime) -> str:
    """Format datetime as HTTP-date (RFC 7231)."""
    return dt.astimezone(UTC).strftime("%a, %d %b %Y %H:%M:%S GMT")


def quote_etag(etag: str | None) -> str | None:
    """Normalize a Graph eTag into a single pair of quotes."""
    if not etag:
        return None
    value = etag.strip().strip('"')
    return f'"{value}"'


def _to_xml(root: ET.Element) -> bytes:
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


class ResponseFormatter:
    """Builds the payloads S3 clients expect from gateway results and errors."""

    def render_listing(self, listing: ObjectListing) -> bytes:
        """Render a listing page as a ListBucketResult document."""
        root = ET.Element("ListBucketResult", xmlns=S3_NAMESPACE)

        ET.SubElement(root, "Name").text = listing.bucket
        ET.SubElement(root, "Prefix").text = listing.prefix
        if listing.delimiter:
            ET.SubElement(root, "Delimiter").text = listing.delimiter
        ET.SubElement(root, "MaxKeys").text = str(listing.max_keys)
        ET.SubElement(root, "KeyCount").text = str(listing.key_count)
        ET.SubElement(root, "IsTruncated").text = str(listing.is_truncated).lower()

        if listing.continuation_token:
            ET.SubElement(root, "ContinuationToken").text = listing.continuation_token
        if listing.next_continuation_token:
            ET.SubElement(
                root, "NextContinuationToken"
            ).text = listing.next_continuation_token
        if listing.start_after:
            ET.SubElement(root, "StartAfter").text = listing.start_after

        for entry in listing.contents:
            contents = ET.SubElement(root, "Contents")
            ET.SubElement(contents, "Key").text = entry.key
            if entry.last_modified is not None:
                ET.SubElement(contents, "LastModified").text = format_s3_timestamp(
                    entry.last_modified
                )
            etag = quote_etag(entry.etag)
            if etag:
                ET.SubElement(contents, "ETag").text = etag
            ET.SubElement(contents, "Size").text = str(entry.size)
            ET.SubElement(contents, "StorageClass").text = STORAGE_CLASS

        for prefix in listing.common_prefixes:
            cp_elem = ET.SubElement(root, "CommonPrefixes")
            ET.SubElement(cp_elem, "Prefix").text = prefix

        return _to_xml(root)

    def render_error(
        self,
        exc: GatewayError,
        resource: str = "",
        request_id: str = "",
    ) -> tuple[int, bytes]:
        """Render a gateway error as an S3 Error document.

        Returns:
            Tuple of (HTTP status, XML body)
        """
        root = ET.Element("Error")
        ET.SubElement(root, "Code").text = exc.s3_code
        ET.SubElement(root, "Message").text = exc.safe_message
        ET.SubElement(root, "Resource").text = resource
        ET.SubElement(root, "RequestId").text = request_id
        return exc.status_code, _to_xml(root)

    def error_response(
        self,
        exc: GatewayError,
        resource: str = "",
        request_id: str = "",
    ) -> Response:
        """Build the HTTP response for a gateway error."""
        status_code, body = self.render_error(exc, resource, request_id)
        headers = {"x-amz-request-id": request_id}
        if isinstance(exc, RateLimitError) and exc.retry_after_seconds is not None:
            headers["Retry-After"] = str(exc.retry_after_seconds)
        if status_code == 401:
            headers["WWW-Authenticate"] = 'Basic realm="s3-sharepoint"'
        return Response(
            content=body,
            status_code=status_code,
            media_type=XML_MEDIA_TYPE,
            headers=headers,
        )

    def object_headers(self, item: RemoteItem, request_id: str = "") -> dict[str, str]:
        """Response headers describing a file."""
        headers = {
            "Content-Type": item.content_type,
            "Content-Length": str(item.size),
            "Accept-Ranges": "none",
            "x-amz-request-id": request_id,
        }
        etag = quote_etag(item.etag)
        if etag:
            headers["ETag"] = etag
        if item.last_modified is not None:
            headers["Last-Modified"] = format_http_date(item.last_modified)
        return headers
