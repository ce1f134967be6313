"""Tests for the in-memory coordination service."""

from __future__ import annotations

import pytest

from fleetplane.coordination.service import SEQUENCE_WIDTH, ConnectionState
from fleetplane.errors import (
    CoordinationConnectionError,
    CoordinationError,
    NodeExistsError,
    NoNodeError,
)


class TestRecords:
    """Basic record operations."""

    @pytest.mark.asyncio
    async def test_create_and_read(self, session):
        path = await session.create("/a/b/c", b"data")

        assert path == "/a/b/c"
        assert await session.get_data("/a/b/c") == b"data"
        assert await session.exists("/a/b")
        assert await session.get_children("/a") == ["b"]

    @pytest.mark.asyncio
    async def test_create_without_parents(self, session):
        with pytest.raises(NoNodeError):
            await session.create("/missing/child", make_parents=False)

    @pytest.mark.asyncio
    async def test_duplicate_create(self, session):
        await session.create("/a")
        with pytest.raises(NodeExistsError):
            await session.create("/a")

    @pytest.mark.asyncio
    async def test_sequential_suffix(self, session):
        first = await session.create("/g/member-", sequential=True)
        second = await session.create("/g/member-", sequential=True)

        assert first == "/g/member-" + "0" * SEQUENCE_WIDTH
        assert second.endswith("1".zfill(SEQUENCE_WIDTH))

    @pytest.mark.asyncio
    async def test_set_data_missing(self, session):
        with pytest.raises(NoNodeError):
            await session.set_data("/nope", b"x")

    @pytest.mark.asyncio
    async def test_delete_requires_recursive_for_children(self, session):
        await session.create("/a/b")
        with pytest.raises(CoordinationError, match="children"):
            await session.delete("/a")
        await session.delete("/a", recursive=True)
        assert not await session.exists("/a/b")


class TestEphemeralRecords:
    """Ephemeral record lifetime."""

    @pytest.mark.asyncio
    async def test_expire_removes_ephemerals(self, ensemble, session):
        other = ensemble.connect()
        await session.create("/g/x", ephemeral=True)
        await session.create("/g/y")

        ensemble.expire(session)

        assert not await other.exists("/g/x")
        assert await other.exists("/g/y")
        assert session.state is ConnectionState.LOST

    @pytest.mark.asyncio
    async def test_suspend_keeps_ephemerals(self, ensemble, session):
        other = ensemble.connect()
        await session.create("/g/x", ephemeral=True)

        ensemble.suspend(session)

        assert await other.exists("/g/x")
        with pytest.raises(CoordinationConnectionError):
            await session.get_data("/g/x")

    @pytest.mark.asyncio
    async def test_resume_after_expiry_gets_new_session(self, ensemble, session):
        old_id = session.session_id
        ensemble.expire(session)
        ensemble.resume(session)

        assert session.state is ConnectionState.RECONNECTED
        assert session.is_connected
        assert session.session_id != old_id

    @pytest.mark.asyncio
    async def test_close_removes_ephemerals(self, ensemble, session):
        other = ensemble.connect()
        await session.create("/g/x", ephemeral=True)

        await session.close()

        assert not await other.exists("/g/x")
        with pytest.raises(CoordinationConnectionError):
            await session.exists("/g")


class TestWatches:
    """Watches and connection listeners."""

    @pytest.mark.asyncio
    async def test_children_watch(self, ensemble, session):
        seen = []
        session.watch_children("/g", lambda path, children: seen.append(children))

        await session.create("/g/a")
        await session.create("/g/b")
        await session.delete("/g/a")

        assert seen[-1] == ["b"]
        assert ["a", "b"] in seen

    @pytest.mark.asyncio
    async def test_unwatch(self, session):
        seen = []
        unwatch = session.watch_children("/g", lambda path, children: seen.append(children))
        await session.create("/g/a")
        unwatch()
        await session.create("/g/b")

        assert seen == [["a"]]

    @pytest.mark.asyncio
    async def test_data_watch(self, session):
        seen = []
        session.watch_data("/k", lambda path, data: seen.append(data))

        await session.create("/k", b"1")
        await session.set_data("/k", b"2")
        await session.delete("/k")

        assert seen == [b"1", b"2", None]

    @pytest.mark.asyncio
    async def test_disconnected_sessions_get_no_notifications(self, ensemble, session):
        other = ensemble.connect()
        seen = []
        session.watch_children("/g", lambda path, children: seen.append(children))
        ensemble.suspend(session)

        await other.create("/g/a")

        assert seen == []

    def test_connection_listener(self, ensemble, session):
        states = []
        session.add_connection_listener(states.append)

        ensemble.suspend(session)
        ensemble.resume(session)
        ensemble.expire(session)

        assert states == [
            ConnectionState.SUSPENDED,
            ConnectionState.RECONNECTED,
            ConnectionState.LOST,
        ]

    def test_failing_listener_does_not_break_others(self, ensemble, session):
        states = []

        def broken(state):
            raise RuntimeError("boom")

        session.add_connection_listener(broken)
        session.add_connection_listener(states.append)
        ensemble.suspend(session)

        assert states == [ConnectionState.SUSPENDED]
