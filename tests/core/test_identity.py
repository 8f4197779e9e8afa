"""Tests for jobcontroller.core.identity -- job keys and instance ids."""

from __future__ import annotations

import pytest

from jobcontroller.core.errors import InvalidSourceError
from jobcontroller.core.identity import job_key, key_for_job, new_job_id
from jobcontroller.core.models import FeatureSetDeliveryStatus, FeatureSetRef, Source
from tests._support.builders import DEFAULT_SOURCE, OTHER_SOURCE, make_job


class TestJobKey:
    def test_deterministic(self):
        assert job_key(Source("localhost:9092", "events")) == job_key(Source("localhost:9092", "events"))

    def test_prefixed_with_source_type(self):
        assert job_key(DEFAULT_SOURCE).startswith("kafka-")

    def test_server_order_does_not_matter(self):
        a = Source("broker-1:9092,broker-2:9092", "events")
        b = Source("broker-2:9092, broker-1:9092", "events")
        assert job_key(a) == job_key(b)

    def test_different_topics_differ(self):
        assert job_key(DEFAULT_SOURCE) != job_key(OTHER_SOURCE)

    def test_feature_set_scoped_key_differs_from_source_key(self):
        scoped = job_key(DEFAULT_SOURCE, FeatureSetRef("default", "test"))
        assert scoped != job_key(DEFAULT_SOURCE)
        assert scoped == job_key(DEFAULT_SOURCE, "default/test")

    def test_distinct_feature_sets_get_distinct_keys(self):
        assert job_key(DEFAULT_SOURCE, "default/a") != job_key(DEFAULT_SOURCE, "default/b")

    @pytest.mark.parametrize(
        "source",
        [Source("", "events"), Source("localhost:9092", ""), Source(" , ", "events")],
    )
    def test_incomplete_source_rejected(self, source):
        with pytest.raises(InvalidSourceError):
            job_key(source)

    def test_non_source_rejected(self):
        with pytest.raises(InvalidSourceError):
            job_key({"bootstrap_servers": "localhost:9092", "topic": "events"})


class TestKeyForJob:
    def test_consolidated_uses_source_only(self):
        job = make_job(feature_sets={"default/test": 1})
        assert key_for_job(job, consolidate=True) == job_key(DEFAULT_SOURCE)

    def test_unconsolidated_single_feature_set(self):
        job = make_job(feature_sets={"default/test": 1})
        assert key_for_job(job, consolidate=False) == job_key(DEFAULT_SOURCE, "default/test")

    def test_unconsolidated_multiple_feature_sets_fall_back_to_source(self):
        job = make_job(feature_sets={"default/a": 0, "default/b": 0})
        assert key_for_job(job, consolidate=False) == job_key(DEFAULT_SOURCE)

    def test_delivery_entries_do_not_change_key(self):
        job = make_job(feature_sets={"default/test": 1})
        before = key_for_job(job)
        job.feature_set_delivery_statuses["default/test"] = FeatureSetDeliveryStatus(version=7)
        assert key_for_job(job) == before


class TestNewJobId:
    def test_prefixed_with_key(self):
        key = job_key(DEFAULT_SOURCE)
        assert new_job_id(key).startswith(f"{key}-")

    def test_unique_per_instance(self):
        key = job_key(DEFAULT_SOURCE)
        assert len({new_job_id(key) for _ in range(50)}) == 50
