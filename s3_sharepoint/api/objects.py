"""S3-compatible object endpoints: ListObjectsV2, GetObject, HeadObject."""

from fastapi import APIRouter, Request
from fastapi.responses import Response, StreamingResponse
from starlette.background import BackgroundTask

from s3_sharepoint.api.deps import AuthenticatedUser, Downloader, Formatter, Lister
from s3_sharepoint.core.logging import get_logger, request_id_ctx
from s3_sharepoint.schemas.objects import GetObjectRequest, ListObjectsV2Request
from s3_sharepoint.services.response_formatter import XML_MEDIA_TYPE

logger = get_logger(__name__)

router = APIRouter(tags=["objects"])


@router.post("/listObjectsV2")
async def list_objects_v2(
    body: ListObjectsV2Request,
    request: Request,
    _user: AuthenticatedUser,
    listing_service: Lister,
    formatter: Formatter,
) -> Response:
    """List one page of a bucket as a ListBucketResult document."""
    request.state.resource = f"/{body.bucket}"

    listing = await listing_service.list_objects(body)

    return Response(
        content=formatter.render_listing(listing),
        media_type=XML_MEDIA_TYPE,
        headers={"x-amz-request-id": request_id_ctx.get() or ""},
    )


@router.post("/getObject")
async def get_object(
    body: GetObjectRequest,
    request: Request,
    _user: AuthenticatedUser,
    download_service: Downloader,
    formatter: Formatter,
) -> StreamingResponse:
    """Stream the body of one object.

    Errors found before the first byte render as S3 Error documents. A
    failure after streaming started aborts the connection, so clients see
    a short body instead of a complete one.
    """
    request.state.resource = f"/{body.bucket}/{body.key}"

    content = await download_service.fetch(body.bucket, body.key)

    return StreamingResponse(
        content.iter_bytes(),
        media_type=content.content_type,
        headers=formatter.object_headers(content.item, request_id_ctx.get() or ""),
        background=BackgroundTask(content.aclose),
    )


@router.post("/headObject")
async def head_object(
    body: GetObjectRequest,
    request: Request,
    _user: AuthenticatedUser,
    download_service: Downloader,
    formatter: Formatter,
) -> Response:
    """Return the headers GetObject would send, without a body."""
    request.state.resource = f"/{body.bucket}/{body.key}"

    item = await download_service.head(body.bucket, body.key)

    headers = formatter.object_headers(item, request_id_ctx.get() or "")
    # The response has no body; the object size travels in its own header
    headers["x-amz-object-size"] = headers.pop("Content-Length")
    return Response(status_code=200, headers=headers)
