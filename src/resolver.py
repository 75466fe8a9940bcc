"""
Policy Resolver - finds the VolumeReplicationClass that applies to a PVC.

The class can be given literally through an annotation, or indirectly
through a selector annotation that is matched against the labels of the
VolumeReplicationClasses in the StorageClass group of the PVC. Annotations
on the PVC take precedence over those of its namespace.
"""

import logging
from typing import List, Optional

from config import ReplicationConfig
from errors import AmbiguousPolicyMatchError
from models import VolumeClaim

logger = logging.getLogger(__name__)


class PolicyResolver:
    """
    Resolves the replication policy name of a claim from the cluster cache.

    Never raises: any lookup failure is logged and resolves to "".
    """

    def __init__(self, cache, config: Optional[ReplicationConfig] = None):
        self.cache = cache
        self.config = config or ReplicationConfig()

    def resolve(self, claim: VolumeClaim) -> str:
        """
        Return the VolumeReplicationClass to use for a claim.

        Args:
            claim: The PVC to resolve a policy for.

        Returns:
            The policy name, or "" when no single policy applies.
        """
        try:
            value = self.policy_value(claim)
            if value:
                return value

            # If no literal class was provided, fall back to the selector
            return self.policy_from_selector(claim)
        except Exception as e:
            logger.error(
                f"failed to resolve VolumeReplicationClass for PVC {claim.key}: {e}"
            )
            return ""

    def policy_value(self, claim: VolumeClaim) -> str:
        return self.annotation_value(claim, self.config.value_annotation)

    def policy_selector(self, claim: VolumeClaim) -> str:
        return self.annotation_value(claim, self.config.selector_annotation)

    def annotation_value(self, claim: VolumeClaim, annotation: str) -> str:
        """Read an annotation from the claim, falling back to its namespace."""
        value = claim.annotations.get(annotation, "")
        if value:
            return value

        namespace = self.cache.namespaces.get("", claim.namespace)
        if namespace is None:
            logger.error(f"failed to retrieve parent namespace for PVC {claim.key}")
            return ""

        return namespace.annotations.get(annotation, "")

    def provisioner(self, claim: VolumeClaim) -> str:
        """The claim's provisioner; some CSI drivers set only the deprecated key."""
        value = claim.annotations.get(self.config.provisioner_annotation, "")
        if value:
            return value
        return claim.annotations.get(self.config.deprecated_provisioner_annotation, "")

    def storage_class_group(self, claim: VolumeClaim) -> str:
        if not claim.storage_class_name:
            logger.info(f"no StorageClass on PVC {claim.key}")
            return ""

        storage_class = self.cache.storage_classes.get("", claim.storage_class_name)
        if storage_class is None:
            logger.error(
                f"failed to retrieve StorageClass {claim.storage_class_name} "
                f"for PVC {claim.key}"
            )
            return ""

        return storage_class.labels.get(self.config.storage_class_group_label, "")

    def policy_from_selector(self, claim: VolumeClaim) -> str:
        """
        Infer the class from the selector annotation and the StorageClass group.

        Exactly one VolumeReplicationClass must carry both the group and the
        selector labels and share the provisioner of the claim.
        """
        selector = self.policy_selector(claim)
        if not selector:
            return ""

        group = self.storage_class_group(claim)
        if not group:
            logger.info(f"no StorageClass group on PVC {claim.key}")
            return ""

        candidates = self.filter_policies(group, selector, self.provisioner(claim))
        try:
            return self._single(claim, candidates)
        except AmbiguousPolicyMatchError as e:
            logger.error(str(e))
            return ""

    def filter_policies(
        self, group: str, selector: str, claim_provisioner: str
    ) -> List[str]:
        """
        Names of the policies in a group with a selector and a provisioner.

        An empty claim provisioner matches every policy, as some CSI drivers
        never set the provisioner annotation.
        """
        policies = self.cache.policies.list(
            labels={
                self.config.storage_class_group_label: group,
                self.config.selector_annotation: selector,
            }
        )

        names = []
        for policy in policies:
            if not claim_provisioner or policy.provisioner == claim_provisioner:
                names.append(policy.name)
            else:
                logger.debug(
                    f"discarded VolumeReplicationClass {policy.name} as it doesn't "
                    f"have the same provisioner as the PVC, got "
                    f"{policy.provisioner}, expected {claim_provisioner}"
                )
        return sorted(names)

    @staticmethod
    def _single(claim: VolumeClaim, candidates: List[str]) -> str:
        if len(candidates) > 1:
            raise AmbiguousPolicyMatchError(claim.key, candidates)
        if not candidates:
            return ""
        return candidates[0]
