"""Unit tests for resolver.py - VolumeReplicationClass resolution."""

import logging

import pytest
from unittest.mock import MagicMock

from config import (
    DEPRECATED_STORAGE_PROVISIONER_ANNOTATION,
    STORAGE_CLASS_GROUP_LABEL,
    STORAGE_PROVISIONER_ANNOTATION,
    VRC_SELECTOR_ANNOTATION,
    VRC_VALUE_ANNOTATION,
)
from conftest import make_claim, make_policy
from models import Namespace, StorageClass
from resolver import PolicyResolver


class TestPolicyValue:
    """Tests for literal class annotations."""

    def test_claim_annotation(self, cache):
        resolver = PolicyResolver(cache)
        claim = make_claim(annotations={VRC_VALUE_ANNOTATION: "gold"})
        assert resolver.resolve(claim) == "gold"

    def test_namespace_annotation(self, cache):
        cache.namespaces.upsert(
            Namespace(name="default", annotations={VRC_VALUE_ANNOTATION: "silver"})
        )
        resolver = PolicyResolver(cache)
        assert resolver.resolve(make_claim()) == "silver"

    def test_claim_takes_precedence_over_namespace(self, cache):
        cache.namespaces.upsert(
            Namespace(name="default", annotations={VRC_VALUE_ANNOTATION: "ns-vrc"})
        )
        resolver = PolicyResolver(cache)
        claim = make_claim(annotations={VRC_VALUE_ANNOTATION: "pvc-vrc"})
        assert resolver.resolve(claim) == "pvc-vrc"

    def test_empty_claim_annotation_falls_back_to_namespace(self, cache):
        cache.namespaces.upsert(
            Namespace(name="default", annotations={VRC_VALUE_ANNOTATION: "ns-vrc"})
        )
        resolver = PolicyResolver(cache)
        claim = make_claim(annotations={VRC_VALUE_ANNOTATION: ""})
        assert resolver.resolve(claim) == "ns-vrc"

    def test_missing_everywhere(self, cache):
        resolver = PolicyResolver(cache)
        assert resolver.resolve(make_claim()) == ""

    def test_missing_namespace_resolves_empty(self, cache, caplog):
        resolver = PolicyResolver(cache)
        claim = make_claim(namespace="ghost")

        with caplog.at_level(logging.ERROR):
            assert resolver.resolve(claim) == ""
        assert "failed to retrieve parent namespace" in caplog.text


class TestSelector:
    """Tests for selector based resolution."""

    def test_single_match(self, selector_cache, selector_claim):
        resolver = PolicyResolver(selector_cache)
        assert resolver.resolve(selector_claim) == "daily-group-1"

    def test_literal_value_wins_over_selector(self, selector_cache, selector_claim):
        selector_claim.annotations[VRC_VALUE_ANNOTATION] = "gold"
        resolver = PolicyResolver(selector_cache)
        assert resolver.resolve(selector_claim) == "gold"

    def test_selector_from_namespace(self, selector_cache):
        selector_cache.namespaces.upsert(
            Namespace(name="default", annotations={VRC_SELECTOR_ANNOTATION: "daily"})
        )
        claim = make_claim(
            annotations={STORAGE_PROVISIONER_ANNOTATION: "csi.example.com"},
            storage_class_name="fast",
        )
        resolver = PolicyResolver(selector_cache)
        assert resolver.resolve(claim) == "daily-group-1"

    def test_no_selector(self, selector_cache):
        resolver = PolicyResolver(selector_cache)
        claim = make_claim(storage_class_name="fast")
        assert resolver.resolve(claim) == ""

    def test_no_storage_class(self, selector_cache, selector_claim):
        selector_claim.storage_class_name = None
        resolver = PolicyResolver(selector_cache)
        assert resolver.resolve(selector_claim) == ""

    def test_unknown_storage_class(self, selector_cache, selector_claim):
        selector_claim.storage_class_name = "missing"
        resolver = PolicyResolver(selector_cache)
        assert resolver.resolve(selector_claim) == ""

    def test_storage_class_without_group(self, selector_cache, selector_claim):
        selector_cache.storage_classes.upsert(StorageClass(name="fast"))
        resolver = PolicyResolver(selector_cache)
        assert resolver.resolve(selector_claim) == ""

    def test_no_matching_selector(self, selector_cache, selector_claim):
        selector_claim.annotations[VRC_SELECTOR_ANNOTATION] = "hourly"
        resolver = PolicyResolver(selector_cache)
        assert resolver.resolve(selector_claim) == ""

    def test_policy_in_other_group_is_ignored(self, selector_cache, selector_claim):
        selector_cache.policies.upsert(make_policy("daily-group-2", group="group-2"))
        resolver = PolicyResolver(selector_cache)
        assert resolver.resolve(selector_claim) == "daily-group-1"

    def test_provisioner_mismatch(self, selector_cache, selector_claim):
        selector_claim.annotations[STORAGE_PROVISIONER_ANNOTATION] = "other.csi"
        resolver = PolicyResolver(selector_cache)
        assert resolver.resolve(selector_claim) == ""

    def test_deprecated_provisioner_annotation(self, selector_cache, selector_claim):
        del selector_claim.annotations[STORAGE_PROVISIONER_ANNOTATION]
        selector_claim.annotations[DEPRECATED_STORAGE_PROVISIONER_ANNOTATION] = (
            "csi.example.com"
        )
        selector_cache.policies.upsert(
            make_policy("daily-other", provisioner="other.csi")
        )
        resolver = PolicyResolver(selector_cache)
        assert resolver.resolve(selector_claim) == "daily-group-1"

    def test_current_provisioner_annotation_wins(self, selector_cache, selector_claim):
        selector_claim.annotations[DEPRECATED_STORAGE_PROVISIONER_ANNOTATION] = "other.csi"
        resolver = PolicyResolver(selector_cache)
        assert resolver.provisioner(selector_claim) == "csi.example.com"

    def test_empty_provisioner_matches_any(self, selector_cache, selector_claim):
        del selector_claim.annotations[STORAGE_PROVISIONER_ANNOTATION]
        resolver = PolicyResolver(selector_cache)
        assert resolver.resolve(selector_claim) == "daily-group-1"

    def test_ambiguous_match_resolves_empty(self, selector_cache, selector_claim, caplog):
        selector_cache.policies.upsert(make_policy("daily-group-1-bis"))
        resolver = PolicyResolver(selector_cache)

        with caplog.at_level(logging.ERROR):
            assert resolver.resolve(selector_claim) == ""
        assert "found 2 matching VolumeReplicationClasses" in caplog.text

    def test_ambiguity_removed_by_provisioner(self, selector_cache, selector_claim):
        selector_cache.policies.upsert(
            make_policy("daily-group-1-other", provisioner="other.csi")
        )
        resolver = PolicyResolver(selector_cache)
        assert resolver.resolve(selector_claim) == "daily-group-1"


class TestFilterPolicies:
    """Tests for PolicyResolver.filter_policies."""

    @pytest.fixture
    def resolver(self, cache):
        cache.policies.upsert(make_policy("p1", provisioner="provisioner-1"))
        cache.policies.upsert(make_policy("p2", provisioner="provisioner-2"))
        cache.policies.upsert(make_policy("p3", selector="hourly"))
        return PolicyResolver(cache)

    def test_match_with_labels_and_provisioner(self, resolver):
        assert resolver.filter_policies("group-1", "daily", "provisioner-1") == ["p1"]

    def test_wrong_provisioner(self, resolver):
        assert resolver.filter_policies("group-1", "daily", "wrong") == []

    def test_wrong_selector(self, resolver):
        assert resolver.filter_policies("group-1", "weekly", "provisioner-1") == []

    def test_empty_provisioner(self, resolver):
        assert resolver.filter_policies("group-1", "daily", "") == ["p1", "p2"]

    def test_group_label_key_is_configurable(self, cache):
        from config import ReplicationConfig

        config = ReplicationConfig(storage_class_group_label="example.com/group")
        policy = make_policy("custom")
        policy.labels = {
            "example.com/group": "group-1",
            VRC_SELECTOR_ANNOTATION: "daily",
        }
        cache.policies.upsert(policy)
        resolver = PolicyResolver(cache, config)
        assert resolver.filter_policies("group-1", "daily", "") == ["custom"]
        assert STORAGE_CLASS_GROUP_LABEL not in policy.labels


class TestResolverNeverRaises:
    def test_cache_failure_resolves_empty(self, caplog):
        cache = MagicMock()
        cache.namespaces.get.side_effect = RuntimeError("cache unavailable")
        resolver = PolicyResolver(cache)

        with caplog.at_level(logging.ERROR):
            assert resolver.resolve(make_claim()) == ""
        assert "cache unavailable" in caplog.text


class TestStorageClassGroup:
    def test_group_read_from_api_object(self, cache):
        cache.storage_classes.upsert(
            StorageClass.from_dict(
                {
                    "metadata": {
                        "name": "fast",
                        "labels": {STORAGE_CLASS_GROUP_LABEL: "group-7"},
                    },
                    "provisioner": "csi.example.com",
                }
            )
        )
        resolver = PolicyResolver(cache)
        claim = make_claim(storage_class_name="fast")

        assert resolver.storage_class_group(claim) == "group-7"
        assert cache.storage_classes.get("", "fast").labels == {
            STORAGE_CLASS_GROUP_LABEL: "group-7"
        }
