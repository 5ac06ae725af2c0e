"""Core application exception classes.

Every failure the gateway can report to a client is a GatewayError. Each
class carries the S3 error code and HTTP status it renders as, plus a safe
message that may be shown to clients. Upstream response text never goes
into the safe message; keep it in logs only.

Exception Hierarchy:
    GatewayError (base)
    +-- ValidationError (malformed key, prefix, cursor or request)
    +-- NotFoundError
    |   +-- NoSuchBucketError
    |   +-- NoSuchKeyError
    +-- AccessDeniedError (caller or app not allowed to see the object)
    +-- AuthError (credential acquisition or inbound authentication)
    |   +-- InvalidCredentialsError (inbound Basic auth, 401)
    +-- UpstreamError (upstream failure after retries, timeouts)
    +-- RateLimitError (throttling beyond the retry budget)
"""


class GatewayError(Exception):
    """Base exception for all gateway errors.

    Attributes:
        s3_code: S3 error code rendered in the <Code> element
        status_code: HTTP status for the error response
        safe_message: Client-facing message
    """

    s3_code = "InternalError"
    status_code = 500
    default_message = "We encountered an internal error. Please try again."

    def __init__(self, message: str | None = None, safe_message: str | None = None):
        super().__init__(message or self.default_message)
        self.safe_message = safe_message or self.default_message


class ValidationError(GatewayError):
    """Raised for malformed keys, prefixes, continuation tokens or bodies.

    The message describes the problem in terms the caller controls, so it
    is also used as the client-facing message.
    """

    s3_code = "InvalidArgument"
    status_code = 400
    default_message = "Invalid argument."

    def __init__(self, message: str | None = None):
        super().__init__(message, safe_message=message)


class NotFoundError(GatewayError):
    """Raised when a bucket, key or folder does not exist."""

    s3_code = "NoSuchKey"
    status_code = 404
    default_message = "The specified key does not exist."


class NoSuchBucketError(NotFoundError):
    """Raised when a bucket name has no configured site."""

    s3_code = "NoSuchBucket"
    default_message = "The specified bucket does not exist."


class NoSuchKeyError(NotFoundError):
    """Raised when an object key does not resolve to a file."""

    s3_code = "NoSuchKey"
    default_message = "The specified key does not exist."


class AccessDeniedError(GatewayError):
    """Raised when the object exists but may not be served."""

    s3_code = "AccessDenied"
    status_code = 403
    default_message = "Access Denied"


class AuthError(GatewayError):
    """Raised when a credential cannot be obtained or verified.

    Upstream token failures are a gateway-side problem and render as 502.
    Inbound authentication failures use InvalidCredentialsError (401).
    """

    s3_code = "InternalError"
    status_code = 502
    default_message = "Unable to authenticate with the storage backend."


class UpstreamError(GatewayError):
    """Raised for non-recoverable upstream failures, including timeouts.

    Attributes:
        upstream_status: HTTP status returned by the upstream, if any
    """

    s3_code = "BadGateway"
    status_code = 502
    default_message = "The storage backend returned an error."

    def __init__(
        self,
        message: str | None = None,
        upstream_status: int | None = None,
        safe_message: str | None = None,
    ):
        super().__init__(message, safe_message=safe_message)
        self.upstream_status = upstream_status
        if upstream_status == 503:
            self.status_code = 503
            self.s3_code = "ServiceUnavailable"
            self.safe_message = (
                safe_message or "The storage backend is temporarily unavailable."
            )


class RateLimitError(GatewayError):
    """Raised when the upstream keeps throttling beyond the retry budget.

    Attributes:
        retry_after_seconds: Hint forwarded to the client as Retry-After
    """

    s3_code = "SlowDown"
    status_code = 429
    default_message = "Please reduce your request rate."

    def __init__(self, message: str | None = None, retry_after_seconds: int | None = None):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class InvalidCredentialsError(AuthError):
    """Raised when a caller's Basic credentials are missing or wrong."""

    s3_code = "AccessDenied"
    status_code = 401
    default_message = "Access Denied"
