"""Object downloads: resolve a key to a drive file and stream its body.

HeadObject on a key ending in "/" that names a folder answers like an S3
directory marker: an empty object. GetObject on the same key is NoSuchKey.
"""

from dataclasses import replace

from s3_sharepoint.core.exceptions import AccessDeniedError, NoSuchKeyError
from s3_sharepoint.core.logging import get_logger
from s3_sharepoint.core.paths import SEPARATOR, PathMapper, RemotePath
from s3_sharepoint.core.sharepoint.client import GraphClient, ObjectContent, RemoteItem
from s3_sharepoint.core.sharepoint.exceptions import SharePointNotFoundError

logger = get_logger(__name__)

FOLDER_MARKER_CONTENT_TYPE = "application/xml"


class DownloadService:
    """Serves GetObject and HeadObject for bucket keys."""

    def __init__(self, client: GraphClient, mapper: PathMapper) -> None:
        self._client = client
        self._mapper = mapper

    async def _resolve(self, bucket: str, key: str) -> tuple[RemotePath, RemoteItem]:
        if key.endswith(SEPARATOR):
            raise NoSuchKeyError(f"Key names a folder: {key!r}")

        path = self._mapper.key_to_path(bucket, key)
        try:
            item = await self._client.get_item(path)
        except SharePointNotFoundError as e:
            raise NoSuchKeyError(f"No item at {path.path!r}") from e

        if item.is_folder:
            raise NoSuchKeyError(f"Key names a folder: {key!r}")
        if not self._mapper.is_visible(item.name):
            logger.warning("download_hidden_file_requested", bucket=bucket, key=key)
            raise AccessDeniedError(f"File name not allowed: {item.name!r}")
        return path, item

    async def _folder_marker(self, bucket: str, key: str) -> RemoteItem:
        path = self._mapper.key_to_path(bucket, key)
        try:
            item = await self._client.get_item(path)
        except SharePointNotFoundError as e:
            raise NoSuchKeyError(f"No folder at {path.path!r}") from e

        if not item.is_folder:
            raise NoSuchKeyError(f"Key names a file, not a folder: {key!r}")
        return replace(item, size=0, mime_type=FOLDER_MARKER_CONTENT_TYPE)

    async def head(self, bucket: str, key: str) -> RemoteItem:
        """Look up file metadata for a key.

        A key ending in "/" is answered for folders only, as a zero-byte
        directory marker.

        Raises:
            NoSuchBucketError: If the bucket is not configured
            NoSuchKeyError: If nothing exists at the key, or the key does not
                end in "/" and names a folder
            AccessDeniedError: If the file name is hidden by the filename
                pattern
        """
        if key.endswith(SEPARATOR):
            return await self._folder_marker(bucket, key)
        _, item = await self._resolve(bucket, key)
        return item

    async def fetch(self, bucket: str, key: str) -> ObjectContent:
        """Open a streaming download of the file stored at a key.

        The caller owns the returned ObjectContent and must consume or
        close it.

        Raises:
            NoSuchBucketError: If the bucket is not configured
            NoSuchKeyError: If nothing, or a folder, exists at the key
            AccessDeniedError: If the file name is hidden by the filename
                pattern
            SharePointError: For upstream failures
        """
        path, item = await self._resolve(bucket, key)
        try:
            content = await self._client.open_content(path, item)
        except SharePointNotFoundError as e:
            # Deleted between metadata lookup and download
            raise NoSuchKeyError(f"Item {item.id} disappeared") from e

        logger.info(
            "download_started",
            bucket=bucket,
            key=key,
            size=content.content_length,
            content_type=content.content_type,
        )
        return content
