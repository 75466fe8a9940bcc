"""
VolumeReplication client and cluster configuration loading.

The Kubernetes client is blocking; calls are run in a worker thread so the
event loop keeps serving other keys while a request is in flight.
"""

import asyncio
import logging

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from errors import ConfigurationError, NotFoundError, TransientAPIError
from models import (
    REPLICATION_GROUP,
    REPLICATION_KIND,
    REPLICATION_PLURAL,
    REPLICATION_VERSION,
    ReplicationDescriptor,
    make_key,
)

logger = logging.getLogger(__name__)


def load_kube_config(path: str = "") -> client.ApiClient:
    """
    Load a Kubernetes connection configuration.

    Uses the kubeconfig at ``path`` when given, otherwise assumes we are
    running inside a pod in the cluster.

    Raises:
        ConfigurationError: If no configuration could be loaded
    """
    try:
        if path:
            config.load_kube_config(config_file=path)
        else:
            config.load_incluster_config()
    except (ConfigException, OSError) as e:
        source = path or "in-cluster environment"
        raise ConfigurationError(
            f"failed to load kubernetes configuration from {source}: {e}"
        ) from e

    return client.ApiClient()


def _api_error(action: str, key: str, e: ApiException) -> TransientAPIError:
    return TransientAPIError(
        f"failed to {action} {REPLICATION_KIND} {key}: {e.status} {e.reason}",
        status=e.status or 0,
    )


class ReplicationClient:
    """Create, get and delete VolumeReplications."""

    def __init__(self, api: client.CustomObjectsApi):
        self.api = api

    @classmethod
    def from_api_client(cls, api_client: client.ApiClient) -> "ReplicationClient":
        return cls(client.CustomObjectsApi(api_client))

    async def create(self, descriptor: ReplicationDescriptor) -> None:
        try:
            await asyncio.to_thread(
                self.api.create_namespaced_custom_object,
                REPLICATION_GROUP,
                REPLICATION_VERSION,
                descriptor.namespace,
                REPLICATION_PLURAL,
                descriptor.to_dict(),
            )
        except ApiException as e:
            raise _api_error("create", descriptor.key, e) from e
        logger.info(f"created {REPLICATION_KIND} {descriptor.key}")

    async def get(self, namespace: str, name: str) -> ReplicationDescriptor:
        """
        Fetch a VolumeReplication.

        Raises:
            NotFoundError: If it does not exist
            TransientAPIError: On any other API failure
        """
        key = make_key(namespace, name)
        try:
            obj = await asyncio.to_thread(
                self.api.get_namespaced_custom_object,
                REPLICATION_GROUP,
                REPLICATION_VERSION,
                namespace,
                REPLICATION_PLURAL,
                name,
            )
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError(REPLICATION_KIND, key) from e
            raise _api_error("get", key, e) from e
        return ReplicationDescriptor.from_dict(obj)

    async def delete(self, namespace: str, name: str) -> None:
        """Delete a VolumeReplication. Deleting a missing one succeeds."""
        key = make_key(namespace, name)
        try:
            await asyncio.to_thread(
                self.api.delete_namespaced_custom_object,
                REPLICATION_GROUP,
                REPLICATION_VERSION,
                namespace,
                REPLICATION_PLURAL,
                name,
            )
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"{REPLICATION_KIND} {key} already deleted")
                return
            raise _api_error("delete", key, e) from e
        logger.info(f"deleted {REPLICATION_KIND} {key}")
