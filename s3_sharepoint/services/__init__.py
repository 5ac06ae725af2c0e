"""Business logic services."""

from .download_service import DownloadService
from .listing_service import ListingService
from .response_formatter import ResponseFormatter

__all__ = [
    "DownloadService",
    "ListingService",
    "ResponseFormatter",
]
