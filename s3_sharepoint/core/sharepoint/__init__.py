"""SharePoint integration for bucket reads.

This package provides SharePoint Online access via Microsoft Graph API
for listing and downloading drive items.

Modules:
    - exceptions: SharePoint-specific exception classes
    - auth: MSAL token management with a shared single-flight cache
    - client: Graph API client wrapper with retry and throttling
"""

from s3_sharepoint.core.sharepoint.auth import (
    GRAPH_DEFAULT_SCOPE,
    AccessToken,
    SharePointAuthService,
    get_sharepoint_auth,
    reset_sharepoint_auth,
)
from s3_sharepoint.core.sharepoint.client import (
    GraphClient,
    ObjectContent,
    RemoteItem,
    close_graph_client,
    get_graph_client,
)
from s3_sharepoint.core.sharepoint.exceptions import (
    SharePointAuthenticationError,
    SharePointError,
    SharePointNotFoundError,
    SharePointPermissionError,
    SharePointRateLimitError,
)

__all__ = [
    # Exceptions
    "SharePointError",
    "SharePointAuthenticationError",
    "SharePointRateLimitError",
    "SharePointNotFoundError",
    "SharePointPermissionError",
    # Auth
    "AccessToken",
    "SharePointAuthService",
    "get_sharepoint_auth",
    "reset_sharepoint_auth",
    "GRAPH_DEFAULT_SCOPE",
    # Client
    "GraphClient",
    "ObjectContent",
    "RemoteItem",
    "get_graph_client",
    "close_graph_client",
]
