"""
Reconciler - decides whether a PVC's VolumeReplication is created, kept or deleted.

VolumeReplications are treated as immutable once created: a replication
that no longer conforms to its PVC is deleted, and the deletion event
triggers a later pass that recreates it with the current class.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from config import ReplicationConfig
from errors import NotFoundError, ReplicatorError
from models import (
    ClaimState,
    DataSource,
    ReplicationDescriptor,
    VolumeClaim,
    claim_state,
    split_key,
)
from resolver import PolicyResolver

logger = logging.getLogger(__name__)


class Action(Enum):
    """What a reconcile pass did (or tried to do)."""

    NOOP = "noop"
    CREATE = "create"
    DELETE = "delete"


@dataclass
class ReconcileResult:
    """Result of a single reconcile pass."""

    action: Action = Action.NOOP
    success: bool = True
    message: str = ""


class Reconciler:
    """
    Per-key reconciliation of VolumeReplications.

    Derives everything from the cache and the API on each call; holds no
    state between passes. Performs at most one create or delete per call.
    """

    def __init__(
        self,
        cache,
        client,
        resolver: Optional[PolicyResolver] = None,
        config: Optional[ReplicationConfig] = None,
    ):
        self.cache = cache
        self.client = client
        self.config = config or ReplicationConfig()
        self.resolver = resolver or PolicyResolver(cache, self.config)

    def is_correct(
        self, claim: VolumeClaim, descriptor: ReplicationDescriptor, policy: str
    ) -> bool:
        """Check that a replication still conforms to its PVC."""
        if descriptor.policy_name != policy:
            logger.info(
                f"VolumeReplication {descriptor.key} has a replication class "
                f"mismatch with its parent (got {descriptor.policy_name})"
            )
            return False

        if descriptor.data_source != DataSource.for_claim(claim.name):
            logger.info(
                f"VolumeReplication {descriptor.key} has a datasource mismatch "
                f"with its parent"
            )
            return False

        return True

    async def reconcile(self, key: str) -> ReconcileResult:
        """
        Reconcile the VolumeReplication of one PVC.

        - PVC gone or being deleted: delete the owned replication.
        - Replication exists: delete it when no class applies anymore or
          when it does not conform; it is recreated on the next pass.
        - Replication missing and a class applies: create it.

        Args:
            key: ``namespace/name`` of the PVC.

        Returns:
            ReconcileResult; success is False when an API call failed and
            the key should be retried.
        """
        logger.info(f"reconciling VolumeReplication for PVC {key}")
        namespace, name = split_key(key)

        claim = self.cache.claims.get(namespace, name)

        # The replication shares the name of its PVC
        try:
            descriptor = await self.client.get(namespace, name)
        except NotFoundError:
            descriptor = None
        except ReplicatorError as e:
            logger.error(f"couldn't get VolumeReplication for PVC {key}: {e}")
            return ReconcileResult(Action.NOOP, success=False, message=str(e))

        # Never touch replications that aren't owned by us
        if descriptor is not None and not descriptor.is_owned(self.config.parent_label):
            logger.info(f"VolumeReplication {key} isn't owned by us, skipping")
            return ReconcileResult(message="not owned")

        state = claim_state(claim)
        if state != ClaimState.ACTIVE:
            if descriptor is None:
                return ReconcileResult(message=f"PVC {state.value}")
            logger.info(
                f"deleting VolumeReplication {key} as its PVC doesn't exist anymore"
            )
            return await self._delete(namespace, name)

        policy = self.resolver.resolve(claim)
        if policy:
            logger.info(f"found VolumeReplicationClass {policy} for PVC {key}")

        if descriptor is not None:
            has_policy = policy != ""
            correct = self.is_correct(claim, descriptor, policy)
            if not has_policy or not correct:
                logger.info(
                    f"deleting VolumeReplication {key} as it doesn't conform "
                    f"anymore, vrcExists({has_policy}), vrCorrect({correct})"
                )
                return await self._delete(namespace, name)
            return ReconcileResult(message="up to date")

        if not policy:
            return ReconcileResult(message="no VolumeReplicationClass")

        logger.info(f"creating VolumeReplication for PVC {key}")
        return await self._create(claim, policy)

    async def _create(self, claim: VolumeClaim, policy: str) -> ReconcileResult:
        descriptor = ReplicationDescriptor.for_claim(
            claim, policy, self.config.parent_label
        )
        try:
            await self.client.create(descriptor)
        except ReplicatorError as e:
            logger.error(f"failed to create VolumeReplication for PVC {claim.key}: {e}")
            return ReconcileResult(Action.CREATE, success=False, message=str(e))
        return ReconcileResult(Action.CREATE, message=f"created with {policy}")

    async def _delete(self, namespace: str, name: str) -> ReconcileResult:
        try:
            await self.client.delete(namespace, name)
        except ReplicatorError as e:
            logger.error(
                f"couldn't delete VolumeReplication for PVC {namespace}/{name}: {e}"
            )
            return ReconcileResult(Action.DELETE, success=False, message=str(e))
        return ReconcileResult(Action.DELETE, message="deleted")
