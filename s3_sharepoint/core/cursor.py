"""Continuation tokens for paginated listings.

A listing is paused by recording where the folder walk stopped: the stack
of folders still being visited, each with the sort position of the last
child already handled, plus the last key handed to the client. The state
is serialized as base64url JSON and signed with HMAC-SHA256 so a client
can hand it back but not forge it.

Token layout: ``<base64url(json)>.<base64url(hmac)>``
"""

import base64
import binascii
import hashlib
import hmac
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from s3_sharepoint.core.exceptions import ValidationError
from s3_sharepoint.core.logging import get_logger

logger = get_logger(__name__)

CURSOR_VERSION = 1
INVALID_TOKEN_MESSAGE = "The continuation token provided is incorrect."


class CursorFrame(BaseModel):
    """One folder on the pending walk stack."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    path: str
    after: str = ""


class ListingCursor(BaseModel):
    """Serializable position inside one logical listing session.

    Attributes:
        mode: "walk" for folder traversal, "search" for search results
        bucket: Bucket the session lists
        prefix: Normalized prefix the session was started with
        delimiter: Delimiter the session was started with ("" if none)
        query: Search query for search sessions
        boundary: Last key handed to the client (or start-after key)
        stack: Pending folders, root first
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    v: Literal[1] = CURSOR_VERSION
    mode: Literal["walk", "search"]
    bucket: str
    prefix: str
    delimiter: str = ""
    query: str = ""
    boundary: str = ""
    stack: list[CursorFrame] = Field(default_factory=list)

    def matches(
        self,
        *,
        mode: str,
        bucket: str,
        prefix: str,
        delimiter: str,
        query: str,
    ) -> bool:
        """Check whether the cursor was issued for the same listing."""
        return (
            self.mode == mode
            and self.bucket == bucket
            and self.prefix == prefix
            and self.delimiter == delimiter
            and self.query == query
        )


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _sign(payload: str, secret: str) -> str:
    digest = hmac.new(secret.encode(), payload.encode("ascii"), hashlib.sha256).digest()
    return _b64encode(digest)


def encode_cursor(cursor: ListingCursor, secret: str) -> str:
    """Serialize and sign a cursor into an opaque continuation token."""
    payload = _b64encode(cursor.model_dump_json().encode("utf-8"))
    return f"{payload}.{_sign(payload, secret)}"


def decode_cursor(token: str, secret: str) -> ListingCursor:
    """Verify and deserialize a continuation token.

    Raises:
        ValidationError: If the token is malformed, tampered with, or
            was not produced by this service
    """
    payload, sep, signature = token.partition(".")
    if not sep or not payload or not payload.isascii() or not signature.isascii():
        logger.warning("continuation_token_malformed", reason="layout")
        raise ValidationError(INVALID_TOKEN_MESSAGE)

    # Use constant-time comparison to prevent timing attacks
    if not hmac.compare_digest(_sign(payload, secret), signature):
        logger.warning("continuation_token_malformed", reason="signature")
        raise ValidationError(INVALID_TOKEN_MESSAGE)

    try:
        raw = _b64decode(payload)
        return ListingCursor.model_validate_json(raw)
    except (binascii.Error, ValueError, PydanticValidationError) as e:
        logger.warning(
            "continuation_token_malformed",
            reason="payload",
            error_type=type(e).__name__,
        )
        raise ValidationError(INVALID_TOKEN_MESSAGE) from e
