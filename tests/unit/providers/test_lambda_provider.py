"""Tests for LambdaComputeProvider (API calls mocked)."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from fleetplane.errors import ConfigurationError, NodeInstallFailure
from fleetplane.providers.base import ExecResponse, NodeStatus, NodeTemplate, ProviderSpec
from fleetplane.providers.lambda_provider import (
    DEFAULT_API_BASE,
    LambdaAPIError,
    LambdaComputeProvider,
    LambdaConfig,
)


def instance(instance_id, status="active", ip="1.2.3.4"):
    return {"id": instance_id, "name": "workers", "status": status, "ip": ip}


@pytest.fixture
def runner():
    mock = MagicMock()
    mock.run = AsyncMock(return_value=ExecResponse(output="ok"))
    return mock


@pytest.fixture
def provider(runner):
    config = LambdaConfig(api_key="key", ssh_key_name="deploy", region="us-east-1", boot_poll_interval_seconds=0)
    return LambdaComputeProvider("lambda-us", config, runner)


class TestFromSpec:
    def test_maps_context_settings(self):
        spec = ProviderSpec(
            context_name="lambda-us",
            provider_name="lambda",
            identity="deploy",
            credential="key",
            options={"region": "us-west-1", "instance_type": "gpu_1x_h100_sxm5"},
        )

        provider = LambdaComputeProvider.from_spec(spec)

        assert provider.name == "lambda-us"
        assert provider.config.api_key == "key"
        assert provider.config.ssh_key_name == "deploy"
        assert provider.config.region == "us-west-1"
        assert provider.config.instance_type == "gpu_1x_h100_sxm5"
        assert provider.config.api_base == DEFAULT_API_BASE

    def test_endpoint_overrides_api_base(self):
        spec = ProviderSpec(context_name="c", api_name="lambda", endpoint="http://mock/api", credential="k")
        assert LambdaComputeProvider.from_spec(spec).config.api_base == "http://mock/api"

    def test_requires_credential(self):
        with pytest.raises(ConfigurationError):
            LambdaComputeProvider.from_spec(ProviderSpec(context_name="c", provider_name="lambda"))


class TestNodes:
    """Node creation, status and destruction."""

    @pytest.mark.asyncio
    async def test_create_nodes_in_group(self, provider):
        async def api(method, endpoint, json=None):
            if endpoint == "/instance-operations/launch":
                return {"data": {"instance_ids": ["i-1", "i-2"]}}
            return {"data": instance(endpoint.rsplit("/", 1)[1])}

        with patch.object(provider, "_api_request", new_callable=AsyncMock, side_effect=api) as mock_api:
            nodes = await provider.create_nodes_in_group("workers", 2, NodeTemplate(hardware="gpu_1x_a100"))

        assert [n.node_id for n in nodes] == ["i-1", "i-2"]
        assert all(n.status is NodeStatus.RUNNING for n in nodes)
        assert nodes[0].address == "1.2.3.4"
        launch = mock_api.call_args_list[0]
        assert launch.kwargs["json"]["instance_type_name"] == "gpu_1x_a100"
        assert launch.kwargs["json"]["region_name"] == "us-east-1"
        assert launch.kwargs["json"]["quantity"] == 2
        assert launch.kwargs["json"]["ssh_key_names"] == ["deploy"]

    @pytest.mark.asyncio
    async def test_waits_for_boot(self, provider):
        statuses = iter(["booting", "booting", "active"])

        async def api(method, endpoint, json=None):
            if endpoint == "/instance-operations/launch":
                return {"data": {"instance_ids": ["i-1"]}}
            return {"data": instance("i-1", status=next(statuses))}

        with patch.object(provider, "_api_request", new_callable=AsyncMock, side_effect=api):
            nodes = await provider.create_nodes_in_group("workers", 1, NodeTemplate())

        assert nodes[0].status is NodeStatus.RUNNING

    @pytest.mark.asyncio
    async def test_region_lookup_prefers_us(self, runner):
        provider = LambdaComputeProvider("c", LambdaConfig(api_key="k"), runner)
        types = {
            "data": {
                "gpu_1x_a10": {
                    "regions_with_capacity_available": [{"name": "europe-central-1"}, {"name": "us-south-1"}]
                }
            }
        }
        with patch.object(provider, "_api_request", new_callable=AsyncMock, return_value=types):
            assert await provider._get_best_region("gpu_1x_a10") == "us-south-1"

    @pytest.mark.asyncio
    async def test_no_capacity_fails_batch(self, runner):
        provider = LambdaComputeProvider("c", LambdaConfig(api_key="k"), runner)
        with patch.object(provider, "_api_request", new_callable=AsyncMock, return_value={"data": {}}):
            with pytest.raises(LambdaAPIError, match="No region"):
                await provider.create_nodes_in_group("workers", 1, NodeTemplate())

    @pytest.mark.asyncio
    async def test_status_mapping(self, provider):
        with patch.object(
            provider, "_api_request", new_callable=AsyncMock, return_value={"data": instance("i-1", "unhealthy")}
        ):
            assert await provider.get_node_status("i-1") is NodeStatus.ERROR

    @pytest.mark.asyncio
    async def test_missing_instance_is_terminated(self, provider):
        with patch.object(
            provider, "_api_request", new_callable=AsyncMock, side_effect=LambdaAPIError("gone", 404)
        ):
            assert await provider.get_node_status("i-1") is NodeStatus.TERMINATED

    @pytest.mark.asyncio
    async def test_destroy_node(self, provider):
        with patch.object(provider, "_api_request", new_callable=AsyncMock, return_value={}) as mock_api:
            await provider.destroy_node("i-1")

        mock_api.assert_called_once_with(
            "POST", "/instance-operations/terminate", json={"instance_ids": ["i-1"]}
        )


class TestScripts:
    @pytest.mark.asyncio
    async def test_runs_script_on_node_address(self, provider, runner):
        with patch.object(
            provider, "_api_request", new_callable=AsyncMock, return_value={"data": instance("i-1", ip="5.6.7.8")}
        ):
            response = await provider.run_script_on_node("i-1", "echo hi", {"timeout_seconds": 30})

        assert response.output == "ok"
        runner.run.assert_awaited_once_with("5.6.7.8", "echo hi", timeout_seconds=30, user=None)

    @pytest.mark.asyncio
    async def test_node_without_address(self, provider):
        with patch.object(
            provider, "_api_request", new_callable=AsyncMock, return_value={"data": instance("i-1", ip=None)}
        ):
            with pytest.raises(NodeInstallFailure, match="no reachable address"):
                await provider.run_script_on_node("i-1", "echo hi")


class TestSession:
    @pytest.mark.asyncio
    async def test_close_session(self, provider):
        mock_session = AsyncMock()
        mock_session.closed = False
        provider._session = mock_session

        await provider.close()

        mock_session.close.assert_called_once()
