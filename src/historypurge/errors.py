"""Error taxonomy shared by remote clients and the purge engine."""


class RemoteError(Exception):
    """Base class for failures reported by a remote client."""


class AuthorizationError(RemoteError):
    """The configured identity may not access the node. Skip it, never abort."""


class TransientError(RemoteError):
    """Throttling or a network blip. The same request may succeed when retried."""


class FatalError(RemoteError):
    """The request failed for a reason a retry will not fix."""


class NotInitializedError(RemoteError):
    """Versions were never loaded for the file, so there is no history to delete."""


class StartupError(Exception):
    """The run cannot start, e.g. the root of the site is not accessible."""
