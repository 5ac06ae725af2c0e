"""ListObjectsV2 over a SharePoint folder tree.

The tree is walked with an explicit stack of folder frames instead of
recursion. Each frame lists its folder once, sorts the children and keeps
the sort position of the last child handled, so a walk can stop after any
child and resume from a continuation token.

Children sort by name, with folders sorting as "name/". A depth-first walk
in that order emits keys in global lexicographic order, because every key
below a folder starts with "name/".

Listing modes:
- no delimiter: every file below the prefix, folders are descended
- delimiter "/": direct children only, sub-folders become common prefixes
- other delimiters: full walk, keys rolled up to common prefixes
- search query: Graph search results, filtered and sorted client-side

max_keys bounds object entries and common prefixes together. Once a page is
full the walk continues until the next new entry or prefix is found, and the
page is truncated only if one exists. Keys that roll up into the page's last
common prefix are consumed on the same page, so a prefix is never reported
twice.
"""

from collections import deque
from dataclasses import dataclass, field

from s3_sharepoint.config import Settings, get_settings
from s3_sharepoint.core.cursor import (
    CursorFrame,
    ListingCursor,
    decode_cursor,
    encode_cursor,
)
from s3_sharepoint.core.exceptions import ValidationError
from s3_sharepoint.core.logging import get_logger
from s3_sharepoint.core.paths import SEPARATOR, PathMapper, RemotePath, join_key
from s3_sharepoint.core.sharepoint.client import GraphClient, RemoteItem
from s3_sharepoint.core.sharepoint.exceptions import SharePointNotFoundError
from s3_sharepoint.schemas.objects import (
    ListObjectsV2Request,
    ObjectEntry,
    ObjectListing,
)

logger = get_logger(__name__)


@dataclass
class _Frame:
    """Folder being visited: remaining children after the ``after`` marker."""

    path: str
    after: str = ""
    pending: deque[tuple[str, RemoteItem]] | None = field(default=None, repr=False)


@dataclass
class _Page:
    """Accumulates one page of results."""

    max_keys: int
    boundary: str
    contents: list[ObjectEntry] = field(default_factory=list)
    common_prefixes: list[str] = field(default_factory=list)

    @property
    def full(self) -> bool:
        return len(self.contents) + len(self.common_prefixes) >= self.max_keys

    @property
    def last_prefix(self) -> str | None:
        return self.common_prefixes[-1] if self.common_prefixes else None

    def add_prefix(self, prefix: str) -> None:
        self.common_prefixes.append(prefix)

    def add_entry(self, key: str, item: RemoteItem) -> None:
        self.contents.append(
            ObjectEntry(
                key=key,
                size=item.size,
                last_modified=item.last_modified,
                etag=item.etag,
            )
        )


def _sort_name(item: RemoteItem) -> str:
    return f"{item.name}{SEPARATOR}" if item.is_folder else item.name


def _folder_after_boundary(folder_prefix: str, boundary: str) -> bool:
    """Check whether any key below a folder can sort after the boundary."""
    if not boundary or folder_prefix > boundary:
        return True
    return boundary.startswith(folder_prefix) and boundary != folder_prefix


class ListingService:
    """Produces paginated, delimiter-aware listings of a bucket.

    Attributes:
        _client: Graph client used for folder listings and search
        _mapper: Bucket/key translation and filename visibility
        _settings: Application settings (max-keys limits, cursor secret)
    """

    def __init__(
        self,
        client: GraphClient,
        mapper: PathMapper,
        settings: Settings | None = None,
    ) -> None:
        self._client = client
        self._mapper = mapper
        self._settings = settings or get_settings()

    def _effective_max_keys(self, requested: int | None) -> int:
        if requested is None:
            return self._settings.max_keys_default
        return min(requested, self._settings.max_keys_ceiling)

    async def list_objects(self, request: ListObjectsV2Request) -> ObjectListing:
        """List one page of objects.

        Args:
            request: ListObjectsV2 parameters

        Returns:
            ObjectListing with entries, common prefixes and, when truncated,
            the continuation token for the next page

        Raises:
            NoSuchBucketError: If the bucket is not configured
            ValidationError: If the prefix, start-after key or continuation
                token is invalid
            SharePointError: For upstream failures
        """
        self._mapper.resolve_bucket(request.bucket)
        prefix = PathMapper.normalize_prefix(request.prefix)
        delimiter = request.delimiter or ""
        query = (request.search_query or "").strip()
        mode = "search" if query else "walk"
        max_keys = self._effective_max_keys(request.max_keys)

        start_after = ""
        if request.start_after:
            start_after = PathMapper.normalize_prefix(request.start_after.lstrip(SEPARATOR))

        cursor: ListingCursor | None = None
        if request.continuation_token:
            cursor = decode_cursor(request.continuation_token, self._settings.secret_key)
            if not cursor.matches(
                mode=mode,
                bucket=request.bucket,
                prefix=prefix,
                delimiter=delimiter,
                query=query,
            ):
                logger.warning(
                    "continuation_token_mismatch",
                    bucket=request.bucket,
                    prefix=prefix,
                )
                raise ValidationError("The continuation token provided is incorrect.")

        listing = ObjectListing(
            bucket=request.bucket,
            prefix=prefix,
            delimiter=request.delimiter or None,
            max_keys=max_keys,
            continuation_token=request.continuation_token,
            start_after=request.start_after,
        )
        if max_keys == 0:
            return listing

        boundary = cursor.boundary if cursor else start_after
        page = _Page(max_keys=max_keys, boundary=boundary)

        if mode == "search":
            truncated = await self._search(request.bucket, prefix, delimiter, query, page)
            stack: list[_Frame] = []
        else:
            stack = self._initial_stack(prefix, cursor)
            truncated = await self._walk(request.bucket, prefix, delimiter, stack, page)

        listing.contents = page.contents
        listing.common_prefixes = page.common_prefixes
        listing.is_truncated = truncated
        if truncated:
            next_cursor = ListingCursor(
                mode=mode,
                bucket=request.bucket,
                prefix=prefix,
                delimiter=delimiter,
                query=query,
                boundary=page.boundary,
                stack=[CursorFrame(path=f.path, after=f.after) for f in stack],
            )
            listing.next_continuation_token = encode_cursor(
                next_cursor, self._settings.secret_key
            )

        logger.info(
            "listing_page_complete",
            bucket=request.bucket,
            prefix=prefix,
            delimiter=delimiter or None,
            mode=mode,
            key_count=listing.key_count,
            is_truncated=truncated,
        )
        return listing

    def _initial_stack(self, prefix: str, cursor: ListingCursor | None) -> list[_Frame]:
        """Build the walk stack for a fresh listing or from a cursor.

        Cursor frames must start at the prefix folder and descend one
        folder at a time; anything else is rejected.
        """
        folder_prefix, _ = PathMapper.split_at_delimiter(prefix, SEPARATOR)
        root_path = folder_prefix.rstrip(SEPARATOR)
        if cursor is None:
            return [_Frame(path=root_path)]

        if not cursor.stack or cursor.stack[0].path != root_path:
            raise ValidationError("The continuation token provided is incorrect.")
        stack = []
        parent: str | None = None
        for frame in cursor.stack:
            if parent is not None:
                name = frame.path[len(parent) + 1 :] if parent else frame.path
                if (
                    not frame.path.startswith(join_key(parent, ""))
                    or not name
                    or SEPARATOR in name
                    or name in (".", "..")
                ):
                    raise ValidationError("The continuation token provided is incorrect.")
            stack.append(_Frame(path=frame.path, after=frame.after))
            parent = frame.path
        return stack

    async def _load_children(
        self,
        folder: RemotePath,
        frame: _Frame,
        prefix: str,
        boundary: str,
    ) -> deque[tuple[str, RemoteItem]]:
        """List a frame's folder and keep the children still to be visited."""
        try:
            items = await self._client.list_all_children(folder)
        except SharePointNotFoundError:
            # Missing prefix folder lists as empty; a folder removed between
            # pages is skipped
            logger.info("listing_folder_missing", path=folder.path)
            return deque()

        kept: list[tuple[str, RemoteItem]] = []
        for item in items:
            sort_name = _sort_name(item)
            if frame.after and sort_name <= frame.after:
                continue
            key = join_key(frame.path, item.name)
            if item.is_folder:
                folder_prefix = f"{key}{SEPARATOR}"
                if not (folder_prefix.startswith(prefix) or prefix.startswith(folder_prefix)):
                    continue
                if not _folder_after_boundary(folder_prefix, boundary):
                    continue
            else:
                if not key.startswith(prefix):
                    continue
                if boundary and key <= boundary:
                    continue
                if not self._mapper.is_visible(item.name):
                    continue
            kept.append((sort_name, item))

        kept.sort(key=lambda pair: pair[0])
        return deque(kept)

    async def _walk(
        self,
        bucket: str,
        prefix: str,
        delimiter: str,
        stack: list[_Frame],
        page: _Page,
    ) -> bool:
        """Advance the folder walk until the page is full.

        Mutates ``stack`` into the paused state and returns whether more
        entries remain.
        """
        shallow = delimiter == SEPARATOR
        boundary = page.boundary

        while stack:
            frame = stack[-1]
            if frame.pending is None:
                folder = self._mapper.folder(bucket, join_key(frame.path, ""))
                frame.pending = await self._load_children(folder, frame, prefix, boundary)
            if not frame.pending:
                stack.pop()
                continue

            sort_name, item = frame.pending[0]
            key = join_key(frame.path, item.name)

            if item.is_folder:
                if not shallow:
                    frame.pending.popleft()
                    frame.after = sort_name
                    stack.append(_Frame(path=key))
                    continue
                rolled_up = f"{key}{SEPARATOR}"
            else:
                rolled_up = PathMapper.common_prefix(key, prefix, delimiter)

            if rolled_up is not None and rolled_up == page.last_prefix:
                frame.pending.popleft()
                frame.after = sort_name
                page.boundary = key
                continue

            if page.full:
                # Leave the child pending; the next page starts with it
                return True

            frame.pending.popleft()
            frame.after = sort_name
            if rolled_up is None:
                page.add_entry(key, item)
                page.boundary = key
            elif item.is_folder:
                page.add_prefix(rolled_up)
                page.boundary = rolled_up
            else:
                page.add_prefix(rolled_up)
                page.boundary = key

        return False

    async def _search(
        self,
        bucket: str,
        prefix: str,
        delimiter: str,
        query: str,
        page: _Page,
    ) -> bool:
        """Fill a page from search results; returns whether more remain."""
        folder_prefix, _ = PathMapper.split_at_delimiter(prefix, SEPARATOR)
        folder = self._mapper.folder(bucket, folder_prefix)
        try:
            items = await self._client.search(folder, query)
        except SharePointNotFoundError:
            logger.info("listing_folder_missing", path=folder.path, query=query)
            return False

        matches = sorted(
            {
                item.path: item
                for item in items
                if not item.is_folder
                and item.path.startswith(prefix)
                and item.path > page.boundary
                and self._mapper.is_visible(item.name)
            }.items()
        )

        for key, item in matches:
            rolled_up = PathMapper.common_prefix(key, prefix, delimiter)
            if rolled_up is not None and rolled_up == page.last_prefix:
                page.boundary = key
                continue
            if page.full:
                return True
            if rolled_up is None:
                page.add_entry(key, item)
            else:
                page.add_prefix(rolled_up)
            page.boundary = key
        return False
