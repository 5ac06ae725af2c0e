"""Microsoft Graph API client wrapper for SharePoint drive reads.

Provides low-level HTTP operations for SharePoint via Graph API with:
- Bearer token from the shared token cache on every call
- One forced token refresh when Graph answers 401
- Automatic retry with exponential backoff for 429/502/503/504, timeouts
  and connection errors, honoring the Retry-After header
- Proper error mapping to SharePoint exception classes
"""

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from s3_sharepoint.config import Settings, get_settings
from s3_sharepoint.core.logging import get_logger
from s3_sharepoint.core.paths import PathMapper, RemotePath, join_key
from s3_sharepoint.core.sharepoint.auth import (
    AccessToken,
    SharePointAuthService,
    get_sharepoint_auth,
)
from s3_sharepoint.core.sharepoint.exceptions import (
    SharePointAuthenticationError,
    SharePointError,
    SharePointNotFoundError,
    SharePointPermissionError,
    SharePointRateLimitError,
)

logger = get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})
MAX_RETRY_AFTER_SECONDS = 120
ITEM_FIELDS = "id,name,size,lastModifiedDateTime,eTag,file,folder,parentReference,webUrl"
DEFAULT_CONTENT_TYPE = "application/octet-stream"


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


@dataclass(frozen=True)
class RemoteItem:
    """Drive item metadata as returned by Graph.

    Attributes:
        id: Graph item id
        name: Item name (last path segment)
        path: Drive-relative path ("" for the drive root)
        is_folder: True for folders, False for files
        size: Size in bytes (folders report the size of their contents)
        last_modified: Last modification instant, if reported
        etag: Graph eTag
        mime_type: File MIME type, if reported
        drive_id: Drive holding the item
        web_url: Browser URL of the item
    """

    id: str
    name: str
    path: str
    is_folder: bool
    size: int = 0
    last_modified: datetime | None = None
    etag: str | None = None
    mime_type: str | None = None
    drive_id: str | None = None
    web_url: str | None = None

    @classmethod
    def from_graph(cls, data: dict[str, Any], path: str) -> "RemoteItem":
        """Build from a Graph driveItem resource."""
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            path=path,
            is_folder="folder" in data,
            size=int(data.get("size") or 0),
            last_modified=_parse_timestamp(data.get("lastModifiedDateTime")),
            etag=data.get("eTag"),
            mime_type=(data.get("file") or {}).get("mimeType"),
            drive_id=(data.get("parentReference") or {}).get("driveId"),
            web_url=data.get("webUrl"),
        )

    @property
    def content_type(self) -> str:
        return self.mime_type or DEFAULT_CONTENT_TYPE


@dataclass
class ObjectContent:
    """Open download of a file, streamed in chunks.

    The upstream connection stays open until the body has been consumed,
    the consumer stops iterating, or aclose() is called.
    """

    item: RemoteItem
    chunk_size: int
    _response: httpx.Response = field(repr=False)

    @property
    def content_type(self) -> str:
        return self.item.content_type

    @property
    def content_length(self) -> int:
        return self.item.size

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """Yield the object body.

        Raises:
            SharePointError: If the upstream stream breaks off or ends
                before content_length bytes were received
        """
        received = 0
        try:
            async for chunk in self._response.aiter_bytes(self.chunk_size):
                received += len(chunk)
                yield chunk
        except (httpx.RequestError, httpx.StreamError) as e:
            logger.error(
                "graph_download_interrupted",
                item_id=self.item.id,
                received=received,
                expected=self.content_length,
                error_type=type(e).__name__,
            )
            raise SharePointError(
                f"Download of {self.item.id} interrupted after {received} bytes: {e}"
            ) from e
        finally:
            await self.aclose()

        if received != self.content_length:
            logger.error(
                "graph_download_truncated",
                item_id=self.item.id,
                received=received,
                expected=self.content_length,
            )
            raise SharePointError(
                f"Download of {self.item.id} ended after {received} of "
                f"{self.content_length} bytes"
            )

        logger.info(
            "graph_download_stream_complete",
            item_id=self.item.id,
            size=received,
        )

    async def aclose(self) -> None:
        """Release the upstream connection."""
        await self._response.aclose()

    async def __aenter__(self) -> "ObjectContent":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


def _retry_after_seconds(response: httpx.Response) -> int | None:
    """Parse a Retry-After header given in seconds."""
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0, min(int(float(value)), MAX_RETRY_AFTER_SECONDS))
    except ValueError:
        return None


class GraphClient:
    """Low-level Microsoft Graph API client with retry and throttling.

    Provides read access to Graph drive endpoints: child listing, item
    metadata, content download and search.

    Attributes:
        _auth: Token cache shared across requests
        _settings: Application settings
        _client: Lazily created httpx.AsyncClient
    """

    def __init__(
        self,
        auth_service: SharePointAuthService,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize Graph client with authentication service.

        Args:
            auth_service: SharePointAuthService for token acquisition
            settings: Application settings (defaults to get_settings())
            transport: Optional httpx transport, mainly for tests
        """
        self._auth = auth_service
        self._settings = settings or get_settings()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._settings.graph_base_url,
                timeout=self._settings.upstream_timeout_seconds,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.debug("graph_client_closed")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        stream: bool = False,
        retry_count: int | None = None,
    ) -> httpx.Response:
        """Make HTTP request with retry and error handling.

        Implements retry logic for:
        - HTTP 401: one forced token refresh, not counted as a retry
        - HTTP 429/502/503/504: Retry-After header, else exponential backoff
        - Timeouts and connection errors: exponential backoff

        Args:
            method: HTTP method
            path: API path relative to the Graph base URL, or an absolute
                Graph URL (nextLink)
            params: Query parameters
            headers: Extra request headers
            stream: Return an unread streaming response (caller closes it)
            retry_count: Maximum number of retries (default from settings)

        Returns:
            httpx.Response with a 2xx status

        Raises:
            SharePointAuthenticationError: On HTTP 401 after a refresh
            SharePointPermissionError: On HTTP 403
            SharePointNotFoundError: On HTTP 404
            SharePointRateLimitError: On HTTP 429 after retries exhausted
            SharePointError: On other errors after retries exhausted
        """
        if retry_count is None:
            retry_count = self._settings.upstream_retry_count
        client = await self._get_client()
        token: AccessToken = await self._auth.get_token()
        refreshed = False
        attempt = 0

        while True:
            logger.debug(
                "graph_request_attempt",
                method=method,
                path=path,
                attempt=attempt + 1,
                max_attempts=retry_count + 1,
            )
            request = client.build_request(
                method,
                path,
                params=params,
                headers={**(headers or {}), "Authorization": f"Bearer {token.value}"},
            )

            try:
                response = await client.send(request, stream=stream)
            except httpx.RequestError as e:
                if attempt < retry_count:
                    delay = 2**attempt  # Exponential backoff
                    logger.warning(
                        "graph_connection_error_retrying",
                        path=path,
                        error_type=type(e).__name__,
                        delay=delay,
                        attempt=attempt + 1,
                    )
                    await asyncio.sleep(delay)
                    attempt += 1
                    continue
                logger.error(
                    "graph_connection_error_exhausted",
                    path=path,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise SharePointError(
                    f"Connection error after {retry_count + 1} attempts: "
                    f"{type(e).__name__}: {e}"
                ) from e

            status_code = response.status_code
            if status_code < 400:
                logger.debug(
                    "graph_request_success",
                    method=method,
                    path=path,
                    status_code=status_code,
                )
                return response

            # Error responses are small; read them so the connection is released
            await response.aread()
            await response.aclose()

            if status_code == 401:
                if not refreshed:
                    logger.warning("graph_token_expired_refreshing", path=path)
                    token = await self._auth.force_refresh(token)
                    refreshed = True
                    continue
                logger.error(
                    "graph_authentication_error",
                    path=path,
                    status_code=status_code,
                )
                raise SharePointAuthenticationError(
                    f"Authentication failed: {response.text[:500]}"
                )

            if status_code == 403:
                logger.error("graph_permission_error", path=path, status_code=status_code)
                raise SharePointPermissionError(f"Permission denied: {response.text[:500]}")

            if status_code == 404:
                logger.info("graph_not_found", path=path, status_code=status_code)
                raise SharePointNotFoundError(f"Resource not found: {path}")

            if status_code in RETRYABLE_STATUS_CODES:
                retry_after = _retry_after_seconds(response)
                if attempt < retry_count:
                    delay = retry_after if retry_after is not None else 2**attempt
                    logger.warning(
                        "graph_transient_error_retrying",
                        path=path,
                        status_code=status_code,
                        delay=delay,
                        attempt=attempt + 1,
                    )
                    await asyncio.sleep(delay)
                    attempt += 1
                    continue
                if status_code == 429:
                    logger.error(
                        "graph_rate_limit_exhausted",
                        path=path,
                        retry_after=retry_after,
                    )
                    raise SharePointRateLimitError(
                        "Rate limit exceeded",
                        retry_after_seconds=retry_after,
                    )
                logger.error(
                    "graph_server_error_exhausted",
                    path=path,
                    status_code=status_code,
                )
                raise SharePointError(
                    f"Server error {status_code}: {response.text[:500]}",
                    upstream_status=status_code,
                )

            logger.error(
                "graph_client_error",
                path=path,
                status_code=status_code,
                response=response.text[:500],
            )
            raise SharePointError(
                f"Graph API error {status_code}: {response.text[:500]}",
                upstream_status=status_code,
            )

    async def _get_json(
        self,
        path: str,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request("GET", path, params=params)
        try:
            return response.json()
        except ValueError as e:
            raise SharePointError(f"Invalid JSON from Graph for {path}") from e

    def _next_link(self, page: dict[str, Any]) -> str | None:
        """Return the page's nextLink after checking it points at Graph."""
        next_link = page.get("@odata.nextLink")
        if not next_link:
            return None
        if not next_link.startswith(self._settings.graph_base_url):
            raise SharePointError(f"Unexpected nextLink host: {next_link[:100]}")
        return next_link

    async def list_children(
        self,
        folder: RemotePath,
        page_cursor: str | None = None,
    ) -> tuple[list[RemoteItem], str | None]:
        """List one page of a folder's children.

        Args:
            folder: Folder to list
            page_cursor: Skip token returned by the previous page

        Returns:
            Tuple of (items, next page cursor or None)

        Raises:
            SharePointNotFoundError: If the folder does not exist
        """
        params: dict[str, Any] = {
            "$top": self._settings.graph_page_size,
            "$select": ITEM_FIELDS,
        }
        if page_cursor:
            params["$skiptoken"] = page_cursor

        page = await self._get_json(folder.item_url("/children"), params)
        items = [
            RemoteItem.from_graph(data, join_key(folder.path, data.get("name", "")))
            for data in page.get("value", [])
        ]

        next_cursor = None
        next_link = self._next_link(page)
        if next_link:
            next_cursor = httpx.URL(next_link).params.get("$skiptoken")
            if not next_cursor:
                raise SharePointError("Graph nextLink carries no $skiptoken")

        logger.debug(
            "graph_list_children",
            path=folder.path,
            count=len(items),
            has_more=next_cursor is not None,
        )
        return items, next_cursor

    async def list_all_children(self, folder: RemotePath) -> list[RemoteItem]:
        """List every child of a folder, following page cursors."""
        items, cursor = await self.list_children(folder)
        while cursor:
            page, cursor = await self.list_children(folder, cursor)
            items.extend(page)
        return items

    async def get_item(self, path: RemotePath) -> RemoteItem:
        """Get item metadata by path.

        Raises:
            SharePointNotFoundError: If no item exists at the path
        """
        logger.debug("graph_get_item", path=path.path)
        data = await self._get_json(path.item_url(), {"$select": ITEM_FIELDS})
        return RemoteItem.from_graph(data, path.path)

    async def _get_item_path(self, drive: RemotePath, item_id: str) -> str | None:
        """Resolve the drive path of an item known only by id."""
        data = await self._get_json(
            f"{drive.drive_url}/items/{quote(item_id, safe='!')}",
            {"$select": "id,name,parentReference"},
        )
        parent_path = (data.get("parentReference") or {}).get("path")
        if parent_path is None:
            return None
        return PathMapper.key_from_parent_reference(parent_path, data.get("name", ""))

    async def open_content(self, path: RemotePath, item: RemoteItem) -> ObjectContent:
        """Open a streaming download of a file.

        Graph answers with a redirect to a pre-authenticated URL; httpx
        drops the Authorization header when following it off-host.

        Args:
            path: Drive path the item was resolved from
            item: File metadata from get_item()

        Returns:
            ObjectContent whose iterator streams the body

        Raises:
            SharePointNotFoundError: If the file disappeared
            SharePointError: For other errors
        """
        logger.info(
            "graph_download_stream_start",
            item_id=item.id,
            size=item.size,
        )
        response = await self._request(
            "GET",
            f"{path.drive_url}/items/{quote(item.id, safe='!')}/content",
            headers={"Accept-Encoding": "identity"},
            stream=True,
        )
        return ObjectContent(
            item=item,
            chunk_size=self._settings.download_chunk_size,
            _response=response,
        )

    async def search(self, folder: RemotePath, query: str) -> list[RemoteItem]:
        """Search a folder (or the drive root) for items matching a query.

        Results whose path Graph omits are resolved with an extra lookup;
        results that still have no path are dropped.

        Args:
            folder: Folder to scope the search to
            query: Free-text query

        Returns:
            Up to ``search_max_results`` items with resolved paths
        """
        escaped = quote(query.replace("'", "''"), safe="")
        url: str | None = folder.item_url(f"/search(q='{escaped}')")
        params: dict[str, Any] | None = {
            "$top": self._settings.graph_page_size,
            "$select": ITEM_FIELDS,
        }
        limit = self._settings.search_max_results
        results: list[RemoteItem] = []

        while url and len(results) < limit:
            page = await self._get_json(url, params)
            params = None  # nextLink already carries the query string
            for data in page.get("value", []):
                name = data.get("name", "")
                parent_path = (data.get("parentReference") or {}).get("path")
                if parent_path is not None:
                    key = PathMapper.key_from_parent_reference(parent_path, name)
                else:
                    key = await self._get_item_path(folder, data.get("id", ""))
                if key is None:
                    logger.warning("graph_search_result_without_path", item_id=data.get("id"))
                    continue
                results.append(RemoteItem.from_graph(data, key))
            url = self._next_link(page)

        logger.info(
            "graph_search_complete",
            path=folder.path,
            count=len(results[:limit]),
            truncated=url is not None,
        )
        return results[:limit]


# Module-level singleton sharing one connection pool
_graph_client: GraphClient | None = None


def get_graph_client() -> GraphClient:
    """Get the Graph client singleton.

    Returns:
        GraphClient bound to the shared SharePoint auth service
    """
    global _graph_client
    if _graph_client is None:
        _graph_client = GraphClient(get_sharepoint_auth())
    return _graph_client


async def close_graph_client() -> None:
    """Close and drop the Graph client singleton."""
    global _graph_client
    if _graph_client is not None:
        await _graph_client.close()
        _graph_client = None
