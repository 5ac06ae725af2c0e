"""SharePoint-specific exception classes.

These exceptions map Microsoft Graph API error scenarios onto the gateway
error taxonomy, so callers above the Graph layer only need to handle
GatewayError subclasses.
"""

from s3_sharepoint.core.exceptions import (
    AccessDeniedError,
    AuthError,
    NotFoundError,
    RateLimitError,
    UpstreamError,
)


class SharePointError(UpstreamError):
    """Raised for Graph API failures that survive the retry budget.

    Carries the upstream HTTP status (if any) for diagnostic mapping.
    """

    pass


class SharePointAuthenticationError(AuthError):
    """Raised when SharePoint authentication fails.

    This can occur when:
    - Client credentials are invalid
    - Token acquisition keeps failing after retries
    - Graph still answers 401 after a forced token refresh
    """

    pass


class SharePointRateLimitError(RateLimitError):
    """Raised when Microsoft Graph API rate limit is exceeded.

    Graph API returns HTTP 429 with Retry-After header.
    The retry_after_seconds attribute indicates when to retry.
    """

    pass


class SharePointNotFoundError(NotFoundError):
    """Raised when a requested file or folder does not exist in SharePoint.

    This maps to HTTP 404 responses from Graph API.
    """

    pass


class SharePointPermissionError(AccessDeniedError):
    """Raised when the app lacks permission for the requested operation.

    This maps to HTTP 403 responses from Graph API.
    Distinct from AuthenticationError which is about credential validity.
    """

    pass
