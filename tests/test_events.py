"""Unit tests for events.py - watch event classification."""

import asyncio
import logging

import pytest
from unittest.mock import MagicMock

from config import PARENT_LABEL, VRC_VALUE_ANNOTATION, ReplicationConfig
from conftest import make_claim, make_descriptor
from events import EventClassifier, EventType, ExclusionFilter, WatchEvent
from kube.cache import Store
from models import Namespace, ReplicationPolicy, ResourceKind, StorageClass
from workqueue import WorkQueue


def drain(queue: WorkQueue):
    keys = []
    while not queue._queue.empty():
        keys.append(queue._queue.get_nowait())
    return sorted(keys)


@pytest.fixture
def claims():
    return Store(ResourceKind.CLAIM)


@pytest.fixture
def queue():
    return WorkQueue()


@pytest.fixture
def classifier(claims, queue):
    return EventClassifier(claims, queue)


class TestExclusionFilter:
    """Tests for ExclusionFilter."""

    def test_empty_pattern_excludes_nothing(self):
        assert ExclusionFilter("").is_excluded("anything") is False

    def test_pattern_is_searched_anywhere(self):
        exclusion = ExclusionFilter("tmp")
        assert exclusion.is_excluded("data-tmp-1") is True
        assert exclusion.is_excluded("data-1") is False

    def test_anchored_pattern(self):
        exclusion = ExclusionFilter("^scratch-")
        assert exclusion.is_excluded("scratch-1") is True
        assert exclusion.is_excluded("data-scratch-1") is False

    def test_invalid_pattern_excludes_nothing(self, caplog):
        with caplog.at_level(logging.ERROR):
            exclusion = ExclusionFilter("data-[")
        assert exclusion.is_excluded("data-[") is False
        assert "invalid exclusion regex" in caplog.text


class TestClaimEvents:
    """PVC notifications always enqueue the claim."""

    @pytest.mark.parametrize(
        "event_type", [EventType.ADDED, EventType.MODIFIED, EventType.DELETED]
    )
    def test_claim_event_enqueues(self, classifier, queue, event_type):
        claim = make_claim(namespace="ns", name="pvc")
        classifier.classify(WatchEvent(ResourceKind.CLAIM, event_type, claim, claim))
        assert drain(queue) == ["ns/pvc"]

    def test_excluded_claim_is_dropped(self, claims, queue):
        classifier = EventClassifier(
            claims, queue, ReplicationConfig(exclusion_regex="^tmp-")
        )
        classifier.classify(
            WatchEvent(ResourceKind.CLAIM, EventType.ADDED, make_claim(name="tmp-1"))
        )
        classifier.classify(
            WatchEvent(ResourceKind.CLAIM, EventType.ADDED, make_claim(name="data-1"))
        )
        assert drain(queue) == ["default/data-1"]

    def test_repeated_events_are_deduplicated(self, classifier, queue):
        claim = make_claim()
        for _ in range(3):
            classifier.classify(WatchEvent(ResourceKind.CLAIM, EventType.MODIFIED, claim))
        assert len(queue) == 1


class TestNamespaceEvents:
    """Namespace notifications fan out to the claims of the namespace."""

    @pytest.fixture(autouse=True)
    def populate(self, claims):
        claims.upsert(make_claim(namespace="ns1", name="a"))
        claims.upsert(make_claim(namespace="ns1", name="b"))
        claims.upsert(make_claim(namespace="ns2", name="c"))

    def test_annotation_change_enqueues_claims(self, classifier, queue):
        old = Namespace(name="ns1", annotations={VRC_VALUE_ANNOTATION: "gold"})
        new = Namespace(name="ns1", annotations={VRC_VALUE_ANNOTATION: "silver"})
        classifier.classify(WatchEvent(ResourceKind.NAMESPACE, EventType.MODIFIED, new, old))
        assert drain(queue) == ["ns1/a", "ns1/b"]

    def test_annotation_added(self, classifier, queue):
        old = Namespace(name="ns1")
        new = Namespace(name="ns1", annotations={VRC_VALUE_ANNOTATION: "gold"})
        classifier.classify(WatchEvent(ResourceKind.NAMESPACE, EventType.MODIFIED, new, old))
        assert drain(queue) == ["ns1/a", "ns1/b"]

    def test_unrelated_change_is_ignored(self, classifier, queue):
        old = Namespace(name="ns1", annotations={VRC_VALUE_ANNOTATION: "gold"})
        new = Namespace(
            name="ns1", annotations={VRC_VALUE_ANNOTATION: "gold", "other": "x"}
        )
        classifier.classify(WatchEvent(ResourceKind.NAMESPACE, EventType.MODIFIED, new, old))
        assert drain(queue) == []

    @pytest.mark.parametrize("event_type", [EventType.ADDED, EventType.DELETED])
    def test_add_and_delete_are_ignored(self, classifier, queue, event_type):
        ns = Namespace(name="ns1", annotations={VRC_VALUE_ANNOTATION: "gold"})
        classifier.classify(WatchEvent(ResourceKind.NAMESPACE, event_type, ns))
        assert drain(queue) == []

    def test_excluded_claims_are_skipped(self, claims, queue):
        classifier = EventClassifier(claims, queue, ReplicationConfig(exclusion_regex="^b$"))
        old = Namespace(name="ns1")
        new = Namespace(name="ns1", annotations={VRC_VALUE_ANNOTATION: "gold"})
        classifier.classify(WatchEvent(ResourceKind.NAMESPACE, EventType.MODIFIED, new, old))
        assert drain(queue) == ["ns1/a"]


class TestDescriptorEvents:
    """VolumeReplication notifications."""

    @pytest.mark.parametrize("event_type", [EventType.ADDED, EventType.DELETED])
    def test_create_and_delete_enqueue(self, classifier, queue, event_type):
        descriptor = make_descriptor(namespace="ns", name="pvc")
        classifier.classify(WatchEvent(ResourceKind.DESCRIPTOR, event_type, descriptor))
        assert drain(queue) == ["ns/pvc"]

    def test_spec_change_enqueues(self, classifier, queue):
        old = make_descriptor()
        old.raw_spec = {"volumeReplicationClass": "gold"}
        new = make_descriptor()
        new.raw_spec = {"volumeReplicationClass": "silver"}
        classifier.classify(WatchEvent(ResourceKind.DESCRIPTOR, EventType.MODIFIED, new, old))
        assert drain(queue) == ["default/data-1"]

    def test_metadata_change_is_ignored(self, classifier, queue):
        old = make_descriptor()
        old.raw_spec = {"volumeReplicationClass": "gold"}
        new = make_descriptor()
        new.raw_spec = {"volumeReplicationClass": "gold"}
        new.annotations = {"touched": "yes"}
        classifier.classify(WatchEvent(ResourceKind.DESCRIPTOR, EventType.MODIFIED, new, old))
        assert drain(queue) == []

    def test_unowned_update_is_ignored(self, classifier, queue):
        old = make_descriptor(owned=False)
        new = make_descriptor(owned=False)
        new.raw_spec = {"volumeReplicationClass": "silver"}
        classifier.classify(WatchEvent(ResourceKind.DESCRIPTOR, EventType.MODIFIED, new, old))
        assert drain(queue) == []

    def test_empty_parent_label_is_not_owned(self, classifier, queue):
        new = make_descriptor(owned=False)
        new.labels = {PARENT_LABEL: ""}
        new.raw_spec = {"volumeReplicationClass": "silver"}
        classifier.classify(
            WatchEvent(ResourceKind.DESCRIPTOR, EventType.MODIFIED, new, make_descriptor())
        )
        assert drain(queue) == []


class TestIgnoredKinds:
    @pytest.mark.parametrize(
        "kind,obj",
        [
            (ResourceKind.STORAGE_CLASS, StorageClass(name="fast")),
            (ResourceKind.POLICY, ReplicationPolicy(name="gold")),
        ],
    )
    def test_never_enqueue(self, classifier, queue, kind, obj):
        for event_type in EventType:
            classifier.classify(WatchEvent(kind, event_type, obj, obj))
        assert drain(queue) == []


@pytest.mark.asyncio
class TestRun:
    """Tests for EventClassifier.run."""

    async def test_run_until_sentinel(self, classifier, queue):
        channel = asyncio.Queue()
        channel.put_nowait(WatchEvent(ResourceKind.CLAIM, EventType.ADDED, make_claim()))
        channel.put_nowait(None)

        await asyncio.wait_for(classifier.run(channel), timeout=1)

        assert drain(queue) == ["default/data-1"]

    async def test_classification_error_does_not_stop_run(self, claims, queue, caplog):
        broken = MagicMock()
        broken.list.side_effect = RuntimeError("store broken")
        classifier = EventClassifier(broken, queue)

        channel = asyncio.Queue()
        channel.put_nowait(
            WatchEvent(
                ResourceKind.NAMESPACE,
                EventType.MODIFIED,
                Namespace(name="ns1", annotations={VRC_VALUE_ANNOTATION: "gold"}),
                Namespace(name="ns1"),
            )
        )
        channel.put_nowait(WatchEvent(ResourceKind.CLAIM, EventType.ADDED, make_claim()))
        channel.put_nowait(None)

        with caplog.at_level(logging.ERROR):
            await asyncio.wait_for(classifier.run(channel), timeout=1)

        assert "store broken" in caplog.text
        assert drain(queue) == ["default/data-1"]
