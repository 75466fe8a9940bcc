"""
Event Classifier - turns watch notifications into claim keys.

Informers publish every add/update/delete they observe onto a single
ingestion channel. The classifier drains that channel and decides which
PersistentVolumeClaim keys need reconciliation, filtering out notifications
that cannot change the outcome.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional, Pattern

from config import ReplicationConfig
from models import ResourceKind, make_key
from workqueue import WorkQueue

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of watch notifications."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass
class WatchEvent:
    """A notification from an informer. ``old`` is set for MODIFIED only."""

    kind: ResourceKind
    event_type: EventType
    obj: Any
    old: Optional[Any] = None


class ExclusionFilter:
    """
    Excludes claims whose name matches a regular expression.

    An empty pattern excludes nothing. A pattern that does not compile is
    logged and also excludes nothing.
    """

    def __init__(self, pattern: str = ""):
        self.pattern = pattern
        self._regex: Optional[Pattern[str]] = None

        if pattern:
            try:
                self._regex = re.compile(pattern)
            except re.error as e:
                logger.error(
                    f"invalid exclusion regex {pattern!r}, no PVC will be "
                    f"excluded: {e}"
                )

    def is_excluded(self, name: str) -> bool:
        if self._regex is None:
            return False
        return self._regex.search(name) is not None


class EventClassifier:
    """Maps watch events to claim keys on the work queue."""

    def __init__(
        self,
        claims,
        queue: WorkQueue,
        config: Optional[ReplicationConfig] = None,
        exclusion: Optional[ExclusionFilter] = None,
    ):
        self.claims = claims
        self.queue = queue
        self.config = config or ReplicationConfig()
        self.exclusion = exclusion or ExclusionFilter(self.config.exclusion_regex)

    async def run(self, channel: asyncio.Queue) -> None:
        """
        Consume the ingestion channel until a ``None`` sentinel arrives.

        Args:
            channel: Queue of WatchEvent published by the informers.
        """
        while True:
            event = await channel.get()
            if event is None:
                logger.info("Event channel closed, stopping classifier")
                return
            try:
                self.classify(event)
            except Exception as e:
                logger.error(f"Failed to classify {event.kind.value} event: {e}")

    def classify(self, event: WatchEvent) -> None:
        if event.kind == ResourceKind.CLAIM:
            self._claim_changed(event)
        elif event.kind == ResourceKind.NAMESPACE:
            if event.event_type == EventType.MODIFIED:
                self._namespace_updated(event.old, event.obj)
        elif event.kind == ResourceKind.DESCRIPTOR:
            if event.event_type == EventType.MODIFIED:
                self._descriptor_updated(event.old, event.obj)
            else:
                self._descriptor_created_or_deleted(event)

    def _enqueue(self, namespace: str, name: str) -> bool:
        if self.exclusion.is_excluded(name):
            logger.debug(f"PVC {namespace}/{name} is excluded from replication")
            return False
        self.queue.add(make_key(namespace, name))
        return True

    def _claim_changed(self, event: WatchEvent) -> None:
        claim = event.obj
        logger.info(f"detected PVC {event.event_type.value.lower()} for {claim.key}")
        self._enqueue(claim.namespace, claim.name)

    def _namespace_updated(self, old, new) -> None:
        annotation = self.config.value_annotation
        old_value = (old.annotations if old else {}).get(annotation, "")
        if old_value == new.annotations.get(annotation, ""):
            return

        logger.info(f"detected VolumeReplicationClass update for namespace {new.name}")
        for claim in self._claims_in(new.name):
            self._enqueue(claim.namespace, claim.name)

    def _claims_in(self, namespace: str) -> Iterable:
        return self.claims.list(namespace=namespace)

    def _descriptor_created_or_deleted(self, event: WatchEvent) -> None:
        descriptor = event.obj
        logger.info(
            f"detected VolumeReplication {event.event_type.value.lower()} "
            f"for {descriptor.key}"
        )
        self._enqueue(descriptor.namespace, descriptor.name)

    def _descriptor_updated(self, old, new) -> None:
        # Don't handle VolumeReplications that aren't controlled by us
        if not new.is_owned(self.config.parent_label):
            logger.debug(
                f"ignoring update to VolumeReplication {new.key} as it isn't "
                f"controlled by us"
            )
            return

        # Metadata-only changes never requeue
        if old is not None and old.raw_spec == new.raw_spec:
            return

        logger.info(f"detected VolumeReplication spec update for {new.key}")
        self._enqueue(new.namespace, new.name)
