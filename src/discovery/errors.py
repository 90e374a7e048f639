from __future__ import annotations


class DiscoveryError(RuntimeError):
    kind = "error"


class PermissionDenied(DiscoveryError):
    kind = "permission_denied"


class LocationUnavailable(DiscoveryError):
    kind = "location_unavailable"


class NetworkError(DiscoveryError):
    kind = "network_error"


class NotFound(DiscoveryError):
    kind = "not_found"


class ServerError(DiscoveryError):
    kind = "server_error"


class UnresolvedScope(DiscoveryError):
    """An administrative scope has no resolved name to search by."""

    kind = "unresolved_scope"


class InvalidCategory(DiscoveryError, ValueError):
    kind = "invalid_category"
