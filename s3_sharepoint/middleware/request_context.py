"""Per-request correlation ID, access logging and last-resort error rendering."""

import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from s3_sharepoint.core.exceptions import GatewayError
from s3_sharepoint.core.logging import generate_request_id, get_logger, request_id_ctx
from s3_sharepoint.services.response_formatter import ResponseFormatter

logger = get_logger(__name__)

SLOW_REQUEST_THRESHOLD_MS = 2000


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tags every response with its request ID and logs one line per call.

    Routes record the S3 resource in ``request.state.resource`` and the
    gateway error handler records ``request.state.s3_code``; both end up in
    the access log. Exceptions no handler claimed are rendered here as
    InternalError so the response still carries the request ID.

    For streamed downloads the duration covers time to first byte only.
    """

    def __init__(self, app, formatter: ResponseFormatter | None = None) -> None:
        super().__init__(app)
        self._formatter = formatter or ResponseFormatter()

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = generate_request_id()
        request_id_ctx.set(request_id)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_unhandled_exception",
                path=request.url.path,
                error_type=type(exc).__name__,
                exc_info=exc,
            )
            request.state.s3_code = GatewayError.s3_code
            response = self._formatter.error_response(
                GatewayError(str(exc)), _resource(request), request_id
            )

        duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
        response.headers["X-Request-ID"] = request_id
        response.headers["x-amz-request-id"] = request_id
        response.headers["X-Response-Time-Ms"] = str(duration_ms)

        log_data = {
            "operation": request.url.path.strip("/") or "root",
            "resource": _resource(request),
            "status_code": response.status_code,
            "s3_code": getattr(request.state, "s3_code", None),
            "duration_ms": duration_ms,
        }
        if duration_ms > SLOW_REQUEST_THRESHOLD_MS:
            logger.warning("slow_request", **log_data)
        elif response.status_code >= 500:
            logger.warning("request_completed", **log_data)
        else:
            logger.info("request_completed", **log_data)

        return response


def _resource(request: Request) -> str:
    return getattr(request.state, "resource", request.url.path)
