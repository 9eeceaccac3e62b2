import asyncio
from unittest.mock import AsyncMock

import pytest

from twitch_relay.registry import (
    ConnectionRegistry,
    NoSuchChannelError,
    RegistryClosedError,
)


class FakeSession:
    def __init__(self, channel: str, *, fail_writes: bool = False):
        self.channel = channel
        self.sent: list = []
        self.close_calls = 0
        self._fail_writes = fail_writes

    async def send_json(self, payload) -> None:
        if self._fail_writes:
            raise ConnectionResetError("peer went away")
        self.sent.append(payload)

    async def close(self) -> None:
        self.close_calls += 1


def _bridge() -> AsyncMock:
    bridge = AsyncMock()
    bridge.join = AsyncMock()
    bridge.part = AsyncMock()
    return bridge


def test_register_joins_and_sends_version_handshake():
    bridge = _bridge()

    async def _run():
        registry = ConnectionRegistry(bridge, "9.9.9")
        await registry.start()
        session = FakeSession("foo")
        await registry.register(session)
        channels = await registry.connected_channels()
        await registry.stop()
        return session, channels

    session, channels = asyncio.run(_run())
    assert session.sent == [{"version": "9.9.9"}]
    assert channels == {"foo"}
    bridge.join.assert_awaited_once_with("foo")


def test_replacing_session_closes_previous_and_routes_to_new():
    bridge = _bridge()

    async def _run():
        registry = ConnectionRegistry(bridge, "1.0")
        await registry.start()
        first, second = FakeSession("foo"), FakeSession("foo")
        await registry.register(first)
        await registry.register(second)
        await registry.deliver("foo", {"Message": "hi"})
        await registry.stop()
        return first, second

    first, second = asyncio.run(_run())
    assert first.close_calls == 1
    assert first.sent == [{"version": "1.0"}]
    assert second.sent == [{"version": "1.0"}, {"Message": "hi"}]
    assert second.close_calls == 0


def test_unregister_of_displaced_session_keeps_replacement():
    bridge = _bridge()

    async def _run():
        registry = ConnectionRegistry(bridge, "1.0")
        await registry.start()
        first, second = FakeSession("foo"), FakeSession("foo")
        await registry.register(first)
        await registry.register(second)
        await registry.unregister(first)
        channels = await registry.connected_channels()
        await registry.deliver("foo", {"Message": "still here"})
        await registry.stop()
        return second, channels

    second, channels = asyncio.run(_run())
    assert channels == {"foo"}
    assert second.sent[-1] == {"Message": "still here"}
    bridge.part.assert_not_awaited()


def test_unregister_removes_entry_and_parts_channel():
    bridge = _bridge()

    async def _run():
        registry = ConnectionRegistry(bridge, "1.0")
        await registry.start()
        session = FakeSession("foo")
        await registry.register(session)
        await registry.unregister(session)
        channels = await registry.connected_channels()
        with pytest.raises(NoSuchChannelError):
            await registry.deliver("foo", {"Message": "lost"})
        await registry.stop()
        return channels

    assert asyncio.run(_run()) == set()
    bridge.part.assert_awaited_once_with("foo")


def test_deliver_to_unknown_channel_fails():
    async def _run():
        registry = ConnectionRegistry(_bridge(), "1.0")
        await registry.start()
        try:
            with pytest.raises(NoSuchChannelError) as exc:
                await registry.deliver("nobody", {"Message": "x"})
            assert exc.value.channel == "nobody"
        finally:
            await registry.stop()

    asyncio.run(_run())


def test_write_failure_is_reported_and_loop_keeps_running():
    async def _run():
        registry = ConnectionRegistry(_bridge(), "1.0")
        await registry.start()
        broken, healthy = FakeSession("broken", fail_writes=True), FakeSession("ok")
        await registry.register(broken)
        await registry.register(healthy)
        with pytest.raises(ConnectionResetError):
            await registry.deliver("broken", {"Message": "x"})
        await registry.deliver("ok", {"Message": "y"})
        await registry.stop()
        return healthy

    healthy = asyncio.run(_run())
    assert healthy.sent[-1] == {"Message": "y"}


def test_commands_are_processed_in_arrival_order():
    async def _run():
        registry = ConnectionRegistry(_bridge(), "1.0")
        await registry.start()
        session = FakeSession("foo")
        await registry.register(session)
        await asyncio.gather(
            *(registry.deliver("foo", {"n": n}) for n in range(20))
        )
        await registry.stop()
        return session

    session = asyncio.run(_run())
    assert [frame["n"] for frame in session.sent[1:]] == list(range(20))


def test_calls_fail_when_registry_not_running():
    async def _run():
        registry = ConnectionRegistry(_bridge(), "1.0")
        with pytest.raises(RegistryClosedError):
            await registry.register(FakeSession("foo"))

    asyncio.run(_run())


def test_stalled_session_does_not_block_other_channels():
    class StalledSession(FakeSession):
        stalled = False

        async def send_json(self, payload) -> None:
            if self.stalled:
                await asyncio.Event().wait()
            await super().send_json(payload)

    async def _run():
        registry = ConnectionRegistry(_bridge(), "1.0", write_timeout=0.05)
        await registry.start()
        slow, fast = StalledSession("slow"), FakeSession("fast")
        await registry.register(slow)
        await registry.register(fast)
        slow.stalled = True
        with pytest.raises(asyncio.TimeoutError):
            await registry.deliver("slow", {"Message": "x"})
        await registry.deliver("fast", {"Message": "y"})
        channels = await registry.connected_channels()
        await registry.stop()
        return slow, fast, channels

    slow, fast, channels = asyncio.run(_run())
    assert fast.sent[-1] == {"Message": "y"}
    assert slow.close_calls == 1
    assert channels == {"slow", "fast"}
