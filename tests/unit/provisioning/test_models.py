"""Tests for provisioning request/result models."""

from __future__ import annotations

import threading

import pytest

from fleetplane.errors import ProvisioningTimeout
from fleetplane.providers.base import NodeHandle
from fleetplane.provisioning.models import (
    ContainerCreateResult,
    LoggingCreationStateListener,
    ProvisionRequest,
    ResultCollection,
)


class TestProvisionRequest:
    def test_single_container_keeps_base_name(self):
        assert ProvisionRequest(name="web").container_name(0) == "web"

    def test_multiple_containers_are_numbered_from_one(self):
        request = ProvisionRequest(name="web", count=3)
        assert [request.container_name(i) for i in range(3)] == ["web1", "web2", "web3"]

    def test_count_must_be_positive(self):
        with pytest.raises(ValueError):
            ProvisionRequest(name="web", count=0)

    def test_is_immutable(self):
        request = ProvisionRequest(name="web")
        with pytest.raises(AttributeError):
            request.count = 5

    def test_with_provider(self, fake_provider):
        request = ProvisionRequest(name="web")
        updated = request.with_provider(fake_provider)

        assert updated.provider is fake_provider
        assert request.provider is None

    def test_default_listener_logs(self, caplog):
        with caplog.at_level("INFO", logger="fleetplane.provisioning.models"):
            ProvisionRequest(name="web").creation_state_listener.on_state_change("hello")
        assert "hello" in caplog.text
        assert isinstance(ProvisionRequest(name="web").creation_state_listener, LoggingCreationStateListener)


class TestResultCollection:
    def make_result(self, request, slot):
        return ContainerCreateResult(
            slot=slot,
            container_name=request.container_name(slot),
            request=request,
            node=NodeHandle(node_id=f"n{slot}"),
        )

    def test_slots_are_write_once(self):
        request = ProvisionRequest(name="web", count=2)
        results = ResultCollection(request)

        assert results.record(self.make_result(request, 0)) is True
        assert results.record_failure(0, RuntimeError("late")) is False
        assert results.snapshot()[0].success

    def test_fill_remaining_only_touches_empty_slots(self):
        request = ProvisionRequest(name="web", count=3)
        results = ResultCollection(request)
        results.record(self.make_result(request, 1))

        filled = results.fill_remaining(ProvisioningTimeout(1.0, 2))

        snapshot = results.snapshot()
        assert filled == 2
        assert [r.success for r in snapshot] == [False, True, False]
        assert snapshot[0].container_name == "web1"
        assert isinstance(snapshot[2].failure, ProvisioningTimeout)

    def test_fills_keep_bound_nodes(self):
        request = ProvisionRequest(name="web", count=2)
        results = ResultCollection(request)
        nodes = [NodeHandle(node_id="n0"), NodeHandle(node_id="n1")]
        results.bind_nodes(nodes)

        results.record_failure(0, RuntimeError("boom"))
        results.fill_remaining(ProvisioningTimeout(1.0, 1))

        snapshot = results.snapshot()
        assert [r.node_id for r in snapshot] == ["n0", "n1"]
        assert not any(r.success for r in snapshot)

    def test_concurrent_records_lose_nothing(self):
        request = ProvisionRequest(name="web", count=64)
        results = ResultCollection(request)
        threads = [
            threading.Thread(target=results.record, args=(self.make_result(request, i),)) for i in range(64)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.completed_count() == 64
        assert [r.slot for r in results.snapshot()] == list(range(64))

    def test_to_dict(self):
        request = ProvisionRequest(name="web")
        results = ResultCollection(request)
        results.record_failure(0, RuntimeError("boom"))

        data = results.snapshot()[0].to_dict()

        assert data["success"] is False
        assert data["failure"] == "boom"
        assert data["failure_type"] == "RuntimeError"
