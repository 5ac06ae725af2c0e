"""Translation between S3 key space and SharePoint drive item paths.

S3 keys are flat strings; SharePoint drives are folder trees. A key maps
one-to-one onto a drive path by treating "/" as the folder separator:

    bucket "docs", key "reports/2024/q1.pdf"
    -> site of "docs", drive root, path "reports/2024/q1.pdf"

Keys are canonicalized before mapping (percent-decoded, repeated separators
collapsed, leading separator dropped). Canonical keys round-trip exactly.

Decoding is applied once to every incoming key. A drive item whose name
contains a literal "%xx" sequence is listed under its raw name, but that
key decodes to a different path on GetObject; clients reach such an item
by escaping the "%" itself ("100%25.pdf" for "100%.pdf").
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass
from urllib.parse import quote, unquote

from s3_sharepoint.config import BucketTarget
from s3_sharepoint.core.exceptions import NoSuchBucketError, ValidationError

SEPARATOR = "/"
MAX_KEY_LENGTH = 1024  # bytes, as in S3

_REPEATED_SEPARATORS = re.compile(r"/{2,}")
_CONTROL_CHARACTERS = re.compile(r"[\x00-\x1f\x7f]")


@dataclass(frozen=True)
class RemotePath:
    """Location of an item inside a bucket's drive.

    Attributes:
        site_id: SharePoint site id
        drive_id: Explicit drive id, or None for the site's default drive
        path: Drive-relative path without leading separator ("" is the root)
    """

    site_id: str
    drive_id: str | None
    path: str

    @property
    def drive_url(self) -> str:
        """Graph URL of the drive holding this item."""
        if self.drive_id:
            return f"/drives/{quote(self.drive_id, safe='!')}"
        return f"/sites/{quote(self.site_id, safe=',.')}/drive"

    def item_url(self, suffix: str = "") -> str:
        """Graph URL addressing this item by path, plus an optional suffix.

        Example: ``/sites/{id}/drive/root:/reports/a.pdf:/content``
        """
        if not self.path:
            return f"{self.drive_url}/root{suffix}"
        return f"{self.drive_url}/root:/{quote(self.path, safe='/')}:{suffix}"

    def child(self, name: str) -> "RemotePath":
        """Path of a direct child of this folder."""
        return RemotePath(self.site_id, self.drive_id, join_key(self.path, name))

    @property
    def name(self) -> str:
        return self.path.rsplit(SEPARATOR, 1)[-1]


def join_key(folder: str, name: str) -> str:
    """Join a folder path and a child name into a key."""
    return f"{folder}{SEPARATOR}{name}" if folder else name


def _clean(value: str, what: str) -> str:
    """Percent-decode, collapse separators and reject unsafe segments."""
    value = unquote(value)
    if _CONTROL_CHARACTERS.search(value):
        raise ValidationError(f"The {what} contains control characters.")
    value = _REPEATED_SEPARATORS.sub(SEPARATOR, value)
    if len(value.encode("utf-8")) > MAX_KEY_LENGTH:
        raise ValidationError(f"The {what} is longer than {MAX_KEY_LENGTH} bytes.")
    if any(segment in (".", "..") for segment in value.split(SEPARATOR)):
        raise ValidationError(f"The {what} must not contain '.' or '..' segments.")
    return value


class PathMapper:
    """Bidirectional mapping between bucket keys and drive item paths.

    Also decides which file names are visible through the gateway, using
    the configured filename pattern.
    """

    def __init__(
        self,
        buckets: Mapping[str, BucketTarget],
        filename_pattern: str = ".*",
    ) -> None:
        self._buckets = dict(buckets)
        self._filename_pattern = re.compile(filename_pattern, re.IGNORECASE)

    def resolve_bucket(self, bucket: str) -> BucketTarget:
        """Look up the SharePoint site for a bucket.

        Raises:
            NoSuchBucketError: If the bucket is not configured
        """
        target = self._buckets.get(bucket)
        if target is None:
            raise NoSuchBucketError(f"Unknown bucket: {bucket!r}")
        return target

    def root(self, bucket: str) -> RemotePath:
        """Drive root of a bucket."""
        target = self.resolve_bucket(bucket)
        return RemotePath(target.site_id, target.drive_id, "")

    def folder(self, bucket: str, folder_prefix: str) -> RemotePath:
        """Drive folder named by a normalized folder prefix ("a/b/" or "")."""
        root = self.root(bucket)
        if not folder_prefix:
            return root
        return root.child(folder_prefix.rstrip(SEPARATOR))

    def key_to_path(self, bucket: str, key: str) -> RemotePath:
        """Map an object key to the drive path of the item.

        Raises:
            NoSuchBucketError: If the bucket is not configured
            ValidationError: If the key is empty or unsafe
        """
        target = self.resolve_bucket(bucket)
        path = _clean(key, "key").strip(SEPARATOR)
        if not path:
            raise ValidationError("The key must not be empty.")
        return RemotePath(target.site_id, target.drive_id, path)

    def path_to_key(self, bucket: str, path: RemotePath | str) -> str:
        """Map a drive path back to the object key."""
        self.resolve_bucket(bucket)
        if isinstance(path, RemotePath):
            path = path.path
        return path.lstrip(SEPARATOR)

    def is_visible(self, name: str) -> bool:
        """Check whether a file name may be listed and downloaded."""
        return self._filename_pattern.search(name) is not None

    @staticmethod
    def normalize_prefix(prefix: str | None) -> str:
        """Canonicalize a listing prefix.

        A path-style prefix such as "/reports" names a folder and becomes
        "reports/". Anything else keeps S3 string-prefix semantics, so
        "reports/a" matches "reports/a.pdf" and "reports/archive/x".

        Raises:
            ValidationError: If the prefix is unsafe
        """
        if not prefix:
            return ""
        cleaned = _clean(prefix, "prefix")
        path_style = cleaned.startswith(SEPARATOR)
        cleaned = cleaned.lstrip(SEPARATOR)
        if path_style and cleaned and not cleaned.endswith(SEPARATOR):
            cleaned += SEPARATOR
        return cleaned

    @staticmethod
    def split_at_delimiter(prefix: str, delimiter: str = SEPARATOR) -> tuple[str, str]:
        """Split a prefix into the folder it fully names and the partial rest.

        Examples:
            ("reports/2024/q", "/") -> ("reports/2024/", "q")
            ("reports/", "/") -> ("reports/", "")
            ("rep", "/") -> ("", "rep")
        """
        cut = prefix.rfind(delimiter)
        if cut == -1:
            return "", prefix
        cut += len(delimiter)
        return prefix[:cut], prefix[cut:]

    @staticmethod
    def common_prefix(key: str, prefix: str, delimiter: str | None) -> str | None:
        """Roll a key up to its S3 common prefix, if the delimiter applies.

        Returns ``prefix + segment + delimiter`` when the key contains the
        delimiter after the prefix, otherwise None.
        """
        if not delimiter or not key.startswith(prefix):
            return None
        cut = key.find(delimiter, len(prefix))
        if cut == -1:
            return None
        return key[: cut + len(delimiter)]

    @staticmethod
    def key_from_parent_reference(parent_path: str, name: str) -> str | None:
        """Build a key from a Graph ``parentReference.path`` and item name.

        Graph reports parents as "/drives/{id}/root:/folder/sub" (percent
        encoded) or "/drive/root:" for the drive root.
        """
        marker = parent_path.find("root:")
        if marker == -1:
            return None
        folder = unquote(parent_path[marker + len("root:") :]).strip(SEPARATOR)
        return join_key(folder, name)
