"""Pytest configuration and fixtures."""

import pytest
from unittest.mock import AsyncMock

from config import (
    PARENT_LABEL,
    STORAGE_CLASS_GROUP_LABEL,
    STORAGE_PROVISIONER_ANNOTATION,
    VRC_SELECTOR_ANNOTATION,
    ReplicationConfig,
)
from errors import NotFoundError
from kube.cache import ClusterCache
from models import (
    DataSource,
    Namespace,
    ReplicationDescriptor,
    ReplicationPolicy,
    StorageClass,
    VolumeClaim,
)


def make_claim(
    name="data-1",
    namespace="default",
    annotations=None,
    labels=None,
    storage_class_name=None,
    deletion_requested=False,
):
    return VolumeClaim(
        name=name,
        namespace=namespace,
        annotations=annotations or {},
        labels=labels or {},
        storage_class_name=storage_class_name,
        deletion_requested=deletion_requested,
    )


def make_descriptor(name="data-1", namespace="default", policy="gold", owned=True):
    labels = {PARENT_LABEL: name} if owned else {}
    return ReplicationDescriptor(
        name=name,
        namespace=namespace,
        policy_name=policy,
        data_source=DataSource.for_claim(name),
        labels=labels,
    )


def make_policy(name, group="group-1", selector="daily", provisioner="csi.example.com"):
    return ReplicationPolicy(
        name=name,
        labels={STORAGE_CLASS_GROUP_LABEL: group, VRC_SELECTOR_ANNOTATION: selector},
        provisioner=provisioner,
    )


@pytest.fixture
def replication_config():
    return ReplicationConfig()


@pytest.fixture
def cache():
    """An empty cluster cache with the default namespace present."""
    cache = ClusterCache()
    cache.namespaces.upsert(Namespace(name="default"))
    return cache


@pytest.fixture
def selector_cache(cache):
    """A cache set up for selector based resolution."""
    cache.storage_classes.upsert(
        StorageClass(
            name="fast",
            labels={STORAGE_CLASS_GROUP_LABEL: "group-1"},
        )
    )
    cache.policies.upsert(make_policy("daily-group-1"))
    return cache


@pytest.fixture
def selector_claim():
    return make_claim(
        annotations={
            VRC_SELECTOR_ANNOTATION: "daily",
            STORAGE_PROVISIONER_ANNOTATION: "csi.example.com",
        },
        storage_class_name="fast",
    )


@pytest.fixture
def mock_client():
    """A replication client where no VolumeReplication exists yet."""
    client = AsyncMock()
    client.get = AsyncMock(side_effect=NotFoundError("VolumeReplication", "default/data-1"))
    client.create = AsyncMock()
    client.delete = AsyncMock()
    return client

