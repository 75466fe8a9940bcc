"""
Kubernetes adapters for the Volume Replicator.

This package provides the concrete collaborators the reconciliation core
consumes: the watch cache, the VolumeReplication client and Lease based
leader election.
"""

from kube.cache import ClusterCache, Informer, Store
from kube.client import ReplicationClient, load_kube_config
from kube.lease import LeaderElector

__all__ = [
    "ClusterCache",
    "Informer",
    "Store",
    "ReplicationClient",
    "load_kube_config",
    "LeaderElector",
]
