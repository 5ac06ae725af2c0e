"""Core application utilities and configuration."""

from s3_sharepoint.core.logging import configure_logging, generate_request_id, get_logger

__all__ = ["configure_logging", "generate_request_id", "get_logger"]
