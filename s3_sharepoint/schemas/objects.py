"""Request and result schemas for object operations."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class ListObjectsV2Request(BaseModel):
    """Body of POST /listObjectsV2."""

    model_config = ConfigDict(extra="ignore")

    bucket: str = Field(min_length=1)
    prefix: str | None = None
    delimiter: str | None = None
    continuation_token: str | None = None
    max_keys: int | None = Field(default=None, ge=0)
    search_query: str | None = None
    start_after: str | None = None


class GetObjectRequest(BaseModel):
    """Body of POST /getObject and POST /headObject."""

    model_config = ConfigDict(extra="ignore")

    bucket: str = Field(min_length=1)
    key: str = Field(min_length=1)


class ObjectEntry(BaseModel):
    """One object in a listing."""

    key: str
    size: int
    last_modified: datetime | None = None
    etag: str | None = None


class ObjectListing(BaseModel):
    """One page of a ListObjectsV2 result."""

    bucket: str
    prefix: str = ""
    delimiter: str | None = None
    max_keys: int
    contents: list[ObjectEntry] = Field(default_factory=list)
    common_prefixes: list[str] = Field(default_factory=list)
    is_truncated: bool = False
    continuation_token: str | None = None
    next_continuation_token: str | None = None
    start_after: str | None = None

    @property
    def key_count(self) -> int:
        """Number of keys on this page, common prefixes included."""
        return len(self.contents) + len(self.common_prefixes)
