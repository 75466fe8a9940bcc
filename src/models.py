"""
Typed views over the Kubernetes objects the replicator watches.

Objects arrive from the API as plain dicts (camelCase keys, as returned by
the API server); each model keeps only the fields the controller reads.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

REPLICATION_GROUP = "replication.storage.openshift.io"
REPLICATION_VERSION = "v1alpha1"
REPLICATION_KIND = "VolumeReplication"
REPLICATION_PLURAL = "volumereplications"
REPLICATION_CLASS_PLURAL = "volumereplicationclasses"

DATA_SOURCE_API_GROUP = "v1"
DATA_SOURCE_KIND = "PersistentVolumeClaim"
PRIMARY_STATE = "primary"


def make_key(namespace: str, name: str) -> str:
    """Build a cache key. Cluster scoped objects are keyed by name only."""
    if not namespace:
        return name
    return f"{namespace}/{name}"


def split_key(key: str) -> Tuple[str, str]:
    """Split a ``namespace/name`` key. A key without a slash is cluster scoped."""
    if "/" not in key:
        return "", key
    namespace, name = key.split("/", 1)
    return namespace, name


class ResourceKind(Enum):
    """Kinds of objects held in the cluster cache."""

    CLAIM = "PersistentVolumeClaim"
    NAMESPACE = "Namespace"
    STORAGE_CLASS = "StorageClass"
    POLICY = "VolumeReplicationClass"
    DESCRIPTOR = "VolumeReplication"


def _metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get("metadata") or {}


class ClaimState(Enum):
    """Lifecycle state of a claim, derived for each reconcile."""

    ABSENT = "absent"
    MARKED_FOR_DELETION = "marked_for_deletion"
    ACTIVE = "active"


@dataclass
class VolumeClaim:
    """A PersistentVolumeClaim."""

    name: str
    namespace: str
    annotations: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    storage_class_name: Optional[str] = None
    deletion_requested: bool = False

    @property
    def key(self) -> str:
        return make_key(self.namespace, self.name)

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "VolumeClaim":
        meta = _metadata(obj)
        spec = obj.get("spec") or {}
        return cls(
            name=meta.get("name", ""),
            namespace=meta.get("namespace", ""),
            annotations=dict(meta.get("annotations") or {}),
            labels=dict(meta.get("labels") or {}),
            storage_class_name=spec.get("storageClassName") or None,
            deletion_requested=meta.get("deletionTimestamp") is not None,
        )


def claim_state(claim: Optional[VolumeClaim]) -> ClaimState:
    if claim is None:
        return ClaimState.ABSENT
    if claim.deletion_requested:
        return ClaimState.MARKED_FOR_DELETION
    return ClaimState.ACTIVE


@dataclass
class Namespace:
    name: str
    annotations: Dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return self.name

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "Namespace":
        meta = _metadata(obj)
        return cls(
            name=meta.get("name", ""),
            annotations=dict(meta.get("annotations") or {}),
        )


@dataclass
class StorageClass:
    """A StorageClass; its group label ties it to replication policies."""

    name: str
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return self.name

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "StorageClass":
        meta = _metadata(obj)
        return cls(
            name=meta.get("name", ""),
            labels=dict(meta.get("labels") or {}),
        )


@dataclass
class ReplicationPolicy:
    """A VolumeReplicationClass."""

    name: str
    labels: Dict[str, str] = field(default_factory=dict)
    provisioner: str = ""

    @property
    def key(self) -> str:
        return self.name

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "ReplicationPolicy":
        meta = _metadata(obj)
        spec = obj.get("spec") or {}
        return cls(
            name=meta.get("name", ""),
            labels=dict(meta.get("labels") or {}),
            provisioner=spec.get("provisioner", "") or "",
        )


@dataclass(frozen=True)
class DataSource:
    api_group: str = ""
    kind: str = ""
    name: str = ""

    @classmethod
    def for_claim(cls, claim_name: str) -> "DataSource":
        return cls(
            api_group=DATA_SOURCE_API_GROUP, kind=DATA_SOURCE_KIND, name=claim_name
        )

    @classmethod
    def from_dict(cls, obj: Optional[Dict[str, Any]]) -> "DataSource":
        obj = obj or {}
        return cls(
            api_group=obj.get("apiGroup") or "",
            kind=obj.get("kind") or "",
            name=obj.get("name") or "",
        )

    def to_dict(self) -> Dict[str, str]:
        return {"apiGroup": self.api_group, "kind": self.kind, "name": self.name}


@dataclass
class ReplicationDescriptor:
    """
    A VolumeReplication mirroring a claim.

    Always named after its claim and living in the claim's namespace.
    """

    name: str
    namespace: str
    policy_name: str = ""
    replication_state: str = PRIMARY_STATE
    data_source: DataSource = field(default_factory=DataSource)
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    # spec as stored on the server, compared structurally on updates
    raw_spec: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def key(self) -> str:
        return make_key(self.namespace, self.name)

    def is_owned(self, parent_label: str) -> bool:
        return bool(self.labels.get(parent_label))

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "ReplicationDescriptor":
        meta = _metadata(obj)
        spec = obj.get("spec") or {}
        return cls(
            name=meta.get("name", ""),
            namespace=meta.get("namespace", ""),
            policy_name=spec.get("volumeReplicationClass") or "",
            replication_state=spec.get("replicationState") or "",
            data_source=DataSource.from_dict(spec.get("dataSource")),
            labels=dict(meta.get("labels") or {}),
            annotations=dict(meta.get("annotations") or {}),
            raw_spec=copy.deepcopy(spec),
        )

    @classmethod
    def for_claim(
        cls, claim: VolumeClaim, policy_name: str, parent_label: str
    ) -> "ReplicationDescriptor":
        """Build the descriptor a claim should own; the claim is left untouched."""
        labels = dict(claim.labels)
        labels[parent_label] = claim.name
        return cls(
            name=claim.name,
            namespace=claim.namespace,
            policy_name=policy_name,
            replication_state=PRIMARY_STATE,
            data_source=DataSource.for_claim(claim.name),
            labels=labels,
            annotations=dict(claim.annotations),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "apiVersion": f"{REPLICATION_GROUP}/{REPLICATION_VERSION}",
            "kind": REPLICATION_KIND,
            "metadata": {
                "name": self.name,
                "namespace": self.namespace,
                "annotations": dict(self.annotations),
                "labels": dict(self.labels),
            },
            "spec": {
                "volumeReplicationClass": self.policy_name,
                "replicationState": self.replication_state,
                "dataSource": self.data_source.to_dict(),
            },
        }
