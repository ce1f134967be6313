"""Tests for provisioning wait helpers."""

from __future__ import annotations

import asyncio

import pytest

from fleetplane.coordination.paths import container_alive_path
from fleetplane.errors import ProviderBatchFailure, ProvisioningError
from fleetplane.providers.base import NodeHandle, NodeStatus
from fleetplane.provisioning.models import ContainerCreateResult, ProvisionRequest
from fleetplane.provisioning.waiters import (
    assert_provisioning_success,
    wait_for_containers_registered,
    wait_for_node_status,
)


def make_results(count=2, failed_slots=()):
    request = ProvisionRequest(name="web", count=count)
    results = []
    for slot in range(count):
        failed = slot in failed_slots
        results.append(
            ContainerCreateResult(
                slot=slot,
                container_name=request.container_name(slot),
                request=request,
                node=None if failed else NodeHandle(node_id=f"fake-node-{slot + 1}"),
                failure=ProviderBatchFailure("rejected") if failed else None,
            )
        )
    return results


class TestAssertProvisioningSuccess:
    def test_all_succeeded(self):
        assert_provisioning_success(make_results())

    def test_names_failed_containers(self):
        with pytest.raises(ProvisioningError, match="web2: rejected"):
            assert_provisioning_success(make_results(failed_slots=(1,)))


class TestWaitForNodeStatus:
    @pytest.mark.asyncio
    async def test_polls_until_running(self, fake_provider):
        fake_provider.statuses["fake-node-1"] = [NodeStatus.PENDING, NodeStatus.PENDING, NodeStatus.RUNNING]

        observed = await wait_for_node_status(
            fake_provider, make_results(), timeout_seconds=1.0, poll_interval_seconds=0.01
        )

        assert observed == {"web1": NodeStatus.RUNNING, "web2": NodeStatus.RUNNING}

    @pytest.mark.asyncio
    async def test_skips_failed_slots(self, fake_provider):
        observed = await wait_for_node_status(
            fake_provider, make_results(failed_slots=(0,)), timeout_seconds=1.0, poll_interval_seconds=0.01
        )
        assert list(observed) == ["web2"]

    @pytest.mark.asyncio
    async def test_lagging_node_raises(self, fake_provider):
        fake_provider.statuses["fake-node-2"] = [NodeStatus.PENDING]

        with pytest.raises(ProvisioningError, match="web2"):
            await wait_for_node_status(
                fake_provider, make_results(), timeout_seconds=0.05, poll_interval_seconds=0.01
            )


class TestWaitForContainersRegistered:
    @pytest.mark.asyncio
    async def test_returns_once_all_registered(self, session):
        await session.create(container_alive_path("web1"), b"", ephemeral=True)

        async def register_later():
            await asyncio.sleep(0.05)
            await session.create(container_alive_path("web2"), b"", ephemeral=True)

        task = asyncio.create_task(register_later())
        await wait_for_containers_registered(
            session, ["web1", "web2"], timeout_seconds=1.0, poll_interval_seconds=0.01
        )
        await task

    @pytest.mark.asyncio
    async def test_missing_container_raises(self, session):
        await session.create(container_alive_path("web1"), b"", ephemeral=True)

        with pytest.raises(ProvisioningError, match=r"\['web2'\]"):
            await wait_for_containers_registered(
                session, ["web1", "web2"], timeout_seconds=0.05, poll_interval_seconds=0.01
            )
