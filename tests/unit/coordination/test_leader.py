"""Tests for LeaderCoordinatedService."""

from __future__ import annotations

import sqlite3
from unittest.mock import patch

import pytest

from fleetplane.coordination.leader import LeaderCoordinatedService, ServiceRole
from fleetplane.coordination.paths import GIT_GROUP, container_config_path

PID = "fleetplane.git"
KEY = "fleetplane.git.url"


async def publish_http(session, container, url):
    await session.create(container_config_path(container, "http"), url.encode())


def make_service(session, config_registry, container, template=None):
    return LeaderCoordinatedService(
        session,
        config_registry,
        group_path=GIT_GROUP,
        member_id="fleet-repo",
        container=container,
        endpoint_template=template or "${zk:" + container + "/http}/git/fleet/",
        registry_pid=PID,
        registry_key=KEY,
    )


async def settle(*services):
    for _ in range(2):
        for service in services:
            await service.membership.flush_events()


class TestElection:
    """Role tracking and endpoint publishing."""

    @pytest.mark.asyncio
    async def test_single_member_becomes_leader_and_publishes(self, ensemble, config_registry):
        session = ensemble.connect()
        await publish_http(session, "root", "http://10.0.0.1:8181")
        service = make_service(session, config_registry, "root")

        await service.start()
        await settle(service)

        assert service.role is ServiceRole.LEADER
        assert config_registry.get(PID)[KEY] == "http://10.0.0.1:8181/git/fleet/"
        assert service.published_endpoint == "http://10.0.0.1:8181/git/fleet/"

    @pytest.mark.asyncio
    async def test_follower_does_not_publish(self, ensemble, config_registry):
        s1, s2 = ensemble.connect(), ensemble.connect()
        await publish_http(s1, "root", "http://10.0.0.1:8181")
        await publish_http(s1, "node2", "http://10.0.0.2:8181")
        leader = make_service(s1, config_registry, "root")
        follower = make_service(s2, config_registry, "node2")

        await leader.start()
        await follower.start()
        await settle(leader, follower)

        assert follower.role is ServiceRole.FOLLOWER
        assert follower.published_endpoint is None
        assert config_registry.get(PID)[KEY] == "http://10.0.0.1:8181/git/fleet/"

    @pytest.mark.asyncio
    async def test_only_leader_advertises_services(self, ensemble, config_registry):
        s1, s2 = ensemble.connect(), ensemble.connect()
        await publish_http(s1, "root", "http://10.0.0.1:8181")
        await publish_http(s1, "node2", "http://10.0.0.2:8181")
        leader = make_service(s1, config_registry, "root")
        follower = make_service(s2, config_registry, "node2")
        await leader.start()
        await follower.start()
        await settle(leader, follower)

        members = await follower.membership.members()

        assert members[0].services == ["${zk:root/http}/git/fleet/"]
        assert members[1].services == []

    @pytest.mark.asyncio
    async def test_follower_takes_over_when_leader_stops(self, ensemble, config_registry):
        s1, s2 = ensemble.connect(), ensemble.connect()
        await publish_http(s1, "root", "http://10.0.0.1:8181")
        await publish_http(s1, "node2", "http://10.0.0.2:8181")
        leader = make_service(s1, config_registry, "root")
        follower = make_service(s2, config_registry, "node2")
        seen = []
        follower.add_endpoint_listener(seen.append)
        await leader.start()
        await follower.start()
        await settle(leader, follower)

        await leader.stop()
        await settle(follower)

        assert follower.role is ServiceRole.LEADER
        assert config_registry.get(PID)[KEY] == "http://10.0.0.2:8181/git/fleet/"
        assert seen == ["http://10.0.0.2:8181/git/fleet/"]

    @pytest.mark.asyncio
    async def test_disconnect_keeps_role_and_skips_writes(self, ensemble, config_registry):
        session = ensemble.connect()
        await publish_http(session, "root", "http://10.0.0.1:8181")
        service = make_service(session, config_registry, "root")
        await service.start()
        await settle(service)

        with patch.object(config_registry, "update", wraps=config_registry.update) as update:
            ensemble.suspend(session)
            await settle(service)

            assert service.role is ServiceRole.LEADER
            update.assert_not_called()


class TestLeadershipChanges:
    """Losing and regaining leadership."""

    @pytest.mark.asyncio
    async def test_regained_leadership_overwrites_peer_endpoint(self, ensemble, config_registry):
        s1, s2 = ensemble.connect(), ensemble.connect()
        await publish_http(s1, "root", "http://10.0.0.1:8181")
        await publish_http(s1, "node2", "http://10.0.0.2:8181")
        first = make_service(s1, config_registry, "root")
        second = make_service(s2, config_registry, "node2")
        await first.start()
        await second.start()
        await settle(first, second)
        assert config_registry.get(PID)[KEY] == "http://10.0.0.1:8181/git/fleet/"

        ensemble.expire(s1)
        await settle(first, second)
        assert second.role is ServiceRole.LEADER
        assert config_registry.get(PID)[KEY] == "http://10.0.0.2:8181/git/fleet/"

        await second.stop()
        ensemble.resume(s1)
        await settle(first)

        assert first.role is ServiceRole.LEADER
        assert config_registry.get(PID)[KEY] == "http://10.0.0.1:8181/git/fleet/"
        assert first.published_endpoint == "http://10.0.0.1:8181/git/fleet/"

    @pytest.mark.asyncio
    async def test_follower_regains_leadership_after_peer_expires(self, ensemble, config_registry):
        s1, s2 = ensemble.connect(), ensemble.connect()
        await publish_http(s1, "root", "http://10.0.0.1:8181")
        await publish_http(s1, "node2", "http://10.0.0.2:8181")
        first = make_service(s1, config_registry, "root")
        second = make_service(s2, config_registry, "node2")
        await first.start()
        await second.start()
        await settle(first, second)

        ensemble.expire(s1)
        await settle(first, second)
        ensemble.resume(s1)
        await settle(first, second)
        assert first.role is ServiceRole.FOLLOWER
        assert first.published_endpoint is None
        assert config_registry.get(PID)[KEY] == "http://10.0.0.2:8181/git/fleet/"

        ensemble.expire(s2)
        await settle(first, second)

        assert first.role is ServiceRole.LEADER
        assert config_registry.get(PID)[KEY] == "http://10.0.0.1:8181/git/fleet/"

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, ensemble, config_registry):
        session = ensemble.connect()
        await publish_http(session, "root", "http://10.0.0.1:8181")
        service = make_service(session, config_registry, "root")
        await service.start()
        await settle(service)
        await service.stop()
        config_registry.delete(PID)

        await service.start()
        await settle(service)

        assert service.role is ServiceRole.LEADER
        assert service.membership.is_connected
        assert config_registry.get(PID)[KEY] == "http://10.0.0.1:8181/git/fleet/"


class TestPublishing:
    """Idempotent publishing and failure handling."""

    @pytest.mark.asyncio
    async def test_publish_same_endpoint_twice_writes_once(self, ensemble, config_registry):
        service = make_service(ensemble.connect(), config_registry, "root")

        with patch.object(config_registry, "update", wraps=config_registry.update) as update:
            first = await service.publish_endpoint("http://a/git/fleet/")
            second = await service.publish_endpoint("http://a/git/fleet/")

        assert first is True
        assert second is False
        assert update.call_count == 1

    @pytest.mark.asyncio
    async def test_repeated_membership_events_do_not_republish(self, ensemble, config_registry):
        s1 = ensemble.connect()
        await publish_http(s1, "root", "http://10.0.0.1:8181")
        leader = make_service(s1, config_registry, "root")
        await leader.start()
        await settle(leader)

        with patch.object(config_registry, "update", wraps=config_registry.update) as update:
            others = [make_service(ensemble.connect(), config_registry, f"n{i}") for i in range(3)]
            for other in others:
                await other.start()
            await settle(leader, *others)

        update.assert_not_called()

    @pytest.mark.asyncio
    async def test_listener_notified_once_per_change(self, ensemble, config_registry):
        service = make_service(ensemble.connect(), config_registry, "root")
        seen = []

        async def async_listener(endpoint):
            seen.append(("async", endpoint))

        service.add_endpoint_listener(lambda endpoint: seen.append(("sync", endpoint)))
        service.add_endpoint_listener(async_listener)

        await service.publish_endpoint("http://a/")
        await service.publish_endpoint("http://a/")
        await service.publish_endpoint("http://b/")

        assert seen == [
            ("sync", "http://a/"),
            ("async", "http://a/"),
            ("sync", "http://b/"),
            ("async", "http://b/"),
        ]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_publish(self, ensemble, config_registry):
        service = make_service(ensemble.connect(), config_registry, "root")

        def broken(endpoint):
            raise RuntimeError("boom")

        service.add_endpoint_listener(broken)

        assert await service.publish_endpoint("http://a/") is True
        assert config_registry.get(PID)[KEY] == "http://a/"

    @pytest.mark.asyncio
    async def test_unresolvable_endpoint_is_retried_on_next_event(self, ensemble, config_registry):
        s1 = ensemble.connect()
        service = make_service(s1, config_registry, "root")
        await service.start()
        await settle(service)

        assert service.is_leader
        assert config_registry.get(PID) is None

        await publish_http(s1, "root", "http://10.0.0.1:8181")
        other = make_service(ensemble.connect(), config_registry, "node2")
        await other.start()
        await settle(service, other)

        assert config_registry.get(PID)[KEY] == "http://10.0.0.1:8181/git/fleet/"

    @pytest.mark.asyncio
    async def test_registry_failure_is_logged_not_raised(self, ensemble, config_registry):
        s1 = ensemble.connect()
        await publish_http(s1, "root", "http://10.0.0.1:8181")
        service = make_service(s1, config_registry, "root")

        with patch.object(config_registry, "update", side_effect=sqlite3.OperationalError("disk I/O error")):
            await service.start()
            await settle(service)

        assert service.is_leader
        assert service.published_endpoint is None

    @pytest.mark.asyncio
    async def test_get_status(self, ensemble, config_registry):
        s1 = ensemble.connect()
        await publish_http(s1, "root", "http://10.0.0.1:8181")
        service = make_service(s1, config_registry, "root")
        await service.start()
        await settle(service)

        status = service.get_status()

        assert status["role"] == "leader"
        assert status["connected"] is True
        assert status["published_endpoint"] == "http://10.0.0.1:8181/git/fleet/"
