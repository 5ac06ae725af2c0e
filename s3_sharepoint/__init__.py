"""S3-compatible read-only gateway for SharePoint document libraries."""

__version__ = "0.1.0"
