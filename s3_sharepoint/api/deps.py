"""API dependencies for route protection and service wiring."""

from typing import Annotated

from fastapi import Depends

from s3_sharepoint.config import Settings, get_settings
from s3_sharepoint.core.auth import require_basic_auth
from s3_sharepoint.core.paths import PathMapper
from s3_sharepoint.core.sharepoint.client import GraphClient, get_graph_client
from s3_sharepoint.services.download_service import DownloadService
from s3_sharepoint.services.listing_service import ListingService
from s3_sharepoint.services.response_formatter import ResponseFormatter

__all__ = [
    "AppSettings",
    "AuthenticatedUser",
    "Downloader",
    "Formatter",
    "Lister",
    "get_download_service",
    "get_listing_service",
    "get_path_mapper",
    "get_response_formatter",
]

AppSettings = Annotated[Settings, Depends(get_settings)]
Graph = Annotated[GraphClient, Depends(get_graph_client)]
AuthenticatedUser = Annotated[str | None, Depends(require_basic_auth)]


def get_path_mapper(settings: AppSettings) -> PathMapper:
    return PathMapper(settings.bucket_sites, settings.filename_pattern)


Mapper = Annotated[PathMapper, Depends(get_path_mapper)]


def get_listing_service(
    client: Graph,
    mapper: Mapper,
    settings: AppSettings,
) -> ListingService:
    return ListingService(client, mapper, settings)


def get_download_service(client: Graph, mapper: Mapper) -> DownloadService:
    return DownloadService(client, mapper)


def get_response_formatter() -> ResponseFormatter:
    return ResponseFormatter()


Lister = Annotated[ListingService, Depends(get_listing_service)]
Downloader = Annotated[DownloadService, Depends(get_download_service)]
Formatter = Annotated[ResponseFormatter, Depends(get_response_formatter)]
