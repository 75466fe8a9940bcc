"""
Error taxonomy for the volume replicator.

Adapters raise these at the Kubernetes boundary; the reconciliation core
catches and logs them so that no exception escapes a reconcile pass.
"""


class ReplicatorError(Exception):
    """Base class for all replicator errors."""


class NotFoundError(ReplicatorError):
    """The requested object does not exist. Treated as absence."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key} not found")


class TransientAPIError(ReplicatorError):
    """An API call failed; the key is retried with backoff by the work queue."""

    def __init__(self, message: str, status: int = 0):
        self.status = status
        super().__init__(message)


class AmbiguousPolicyMatchError(ReplicatorError):
    """More than one replication policy matched a claim's selector."""

    def __init__(self, key: str, candidates):
        self.key = key
        self.candidates = list(candidates)
        super().__init__(
            f"found {len(self.candidates)} matching VolumeReplicationClasses "
            f"for PVC {key}, expected 1: {', '.join(self.candidates)}"
        )


class ConfigurationError(ReplicatorError):
    """Startup configuration could not be loaded. Fatal."""
