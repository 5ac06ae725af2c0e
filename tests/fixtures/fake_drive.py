"""In-memory SharePoint drive standing in for GraphClient in service tests."""

from datetime import UTC, datetime

from s3_sharepoint.config import BucketTarget, Settings
from s3_sharepoint.core.paths import PathMapper, RemotePath, join_key
from s3_sharepoint.core.sharepoint.client import RemoteItem
from s3_sharepoint.core.sharepoint.exceptions import SharePointNotFoundError

TEST_SECRET_KEY = "s" * 48
SITE_ID = "contoso.sharepoint.com,1111,2222"
MODIFIED = datetime(2024, 3, 1, 12, 30, tzinfo=UTC)


def make_settings(**overrides) -> Settings:
    """Settings for tests, independent of the process environment."""
    values = {
        "secret_key": TEST_SECRET_KEY,
        "environment": "development",
        "bucket_sites": {"docs": {"site_id": SITE_ID}},
        "sharepoint_tenant_id": "tenant-0000-1111",
        "sharepoint_client_id": "client-0000-1111",
        "sharepoint_client_secret": "client-secret",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_mapper(filename_pattern: str = ".*") -> PathMapper:
    return PathMapper({"docs": BucketTarget(site_id=SITE_ID)}, filename_pattern)


class FakeDrive:
    """Folder tree built from a list of file keys.

    Folders are implied by the keys; keys ending in "/" create empty
    folders. Records every folder listing so tests can count upstream
    calls.
    """

    def __init__(self, keys: list[str]) -> None:
        self.children: dict[str, dict[str, RemoteItem]] = {"": {}}
        self.listed: list[str] = []
        self.searches: list[tuple[str, str]] = []
        for key in keys:
            self.add(key)

    def _ensure_folder(self, path: str) -> None:
        if path in self.children:
            return
        parent, _, name = path.rpartition("/")
        self._ensure_folder(parent)
        self.children[parent][name] = RemoteItem(
            id=f"id-{path}",
            name=name,
            path=path,
            is_folder=True,
        )
        self.children[path] = {}

    def add(self, key: str, size: int | None = None) -> None:
        if key.endswith("/"):
            self._ensure_folder(key.rstrip("/"))
            return
        parent, _, name = key.rpartition("/")
        self._ensure_folder(parent)
        self.children[parent][name] = RemoteItem(
            id=f"id-{key}",
            name=name,
            path=key,
            is_folder=False,
            size=len(key) if size is None else size,
            last_modified=MODIFIED,
            etag=f'"{{ETAG-{name}}},1"',
            mime_type="application/pdf" if name.endswith(".pdf") else None,
        )

    def remove(self, key: str) -> None:
        parent, _, name = key.rstrip("/").rpartition("/")
        del self.children[parent][name]
        if key.endswith("/"):
            prefix = key.rstrip("/")
            for path in [p for p in self.children if p == prefix or p.startswith(key)]:
                del self.children[path]

    async def list_all_children(self, folder: RemotePath) -> list[RemoteItem]:
        self.listed.append(folder.path)
        if folder.path not in self.children:
            raise SharePointNotFoundError(f"Resource not found: {folder.path}")
        # Graph returns children in no particular order
        return list(reversed(self.children[folder.path].values()))

    async def get_item(self, path: RemotePath) -> RemoteItem:
        parent, _, name = path.path.rpartition("/")
        try:
            return self.children[parent][name]
        except KeyError:
            raise SharePointNotFoundError(f"Resource not found: {path.path}") from None

    async def search(self, folder: RemotePath, query: str) -> list[RemoteItem]:
        self.searches.append((folder.path, query))
        if folder.path not in self.children:
            raise SharePointNotFoundError(f"Resource not found: {folder.path}")
        results = []
        stack = [folder.path]
        while stack:
            path = stack.pop()
            for item in self.children[path].values():
                if query.lower() in item.name.lower():
                    results.append(item)
                if item.is_folder:
                    stack.append(join_key(path, item.name))
        return results

    def all_files(self) -> list[str]:
        return sorted(
            item.path
            for entries in self.children.values()
            for item in entries.values()
            if not item.is_folder
        )
