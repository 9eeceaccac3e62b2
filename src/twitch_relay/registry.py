"""Channel -> session table owned by a single control loop."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol, Set, Union

if TYPE_CHECKING:
    from .session import Session

LOG = logging.getLogger(__name__)

# Upper bound on a single write issued from the control loop.
WRITE_TIMEOUT_SECONDS = 5.0


class NoSuchChannelError(LookupError):
    """Raised when a delivery targets a channel without a registered session."""

    def __init__(self, channel: str):
        super().__init__(f"No session registered for channel '{channel}'")
        self.channel = channel


class RegistryClosedError(RuntimeError):
    """Raised when the control loop is not running."""


class ChannelMembership(Protocol):
    async def join(self, channel: str) -> None: ...

    async def part(self, channel: str) -> None: ...


@dataclass
class _Register:
    session: "Session"
    done: asyncio.Future = field(repr=False)


@dataclass
class _Unregister:
    session: "Session"
    done: asyncio.Future = field(repr=False)


@dataclass
class _Deliver:
    channel: str
    payload: Any
    done: asyncio.Future = field(repr=False)


@dataclass
class _Snapshot:
    done: asyncio.Future = field(repr=False)


_Command = Union[_Register, _Unregister, _Deliver, _Snapshot]


class ConnectionRegistry:
    """Routes chat events to the one session bound to each channel.

    The table is only read and written by the task started in :meth:`start`.
    Everything else submits commands to its queue and awaits the result.
    """

    def __init__(
        self,
        bridge: ChannelMembership,
        version: str,
        *,
        write_timeout: float = WRITE_TIMEOUT_SECONDS,
    ):
        self._bridge = bridge
        self._version = version
        self._write_timeout = write_timeout
        self._sessions: Dict[str, "Session"] = {}
        self._closing: Set[asyncio.Task[None]] = set()
        self._queue: Optional[asyncio.Queue[_Command]] = None
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._run(), name="connection-registry")

    async def stop(self) -> None:
        task, queue = self._task, self._queue
        self._task = None
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._closing:
            await asyncio.wait(set(self._closing), timeout=self._write_timeout)
        while queue is not None and not queue.empty():
            command = queue.get_nowait()
            if not command.done.done():
                command.done.set_exception(RegistryClosedError("registry stopped"))
        self._queue = None

    async def register(self, session: "Session") -> None:
        await self._submit(_Register, session)

    async def unregister(self, session: "Session") -> None:
        await self._submit(_Unregister, session)

    async def deliver(self, channel: str, payload: Any) -> None:
        await self._submit(_Deliver, channel, payload)

    async def connected_channels(self) -> Set[str]:
        return await self._submit(_Snapshot)

    async def _submit(self, command_type, *args):
        if not self.running or self._queue is None:
            raise RegistryClosedError("registry is not running")
        done = asyncio.get_running_loop().create_future()
        await self._queue.put(command_type(*args, done=done))
        return await done

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            command = await self._queue.get()
            try:
                result = await self._handle(command)
            except asyncio.CancelledError:
                if not command.done.done():
                    command.done.set_exception(RegistryClosedError("registry stopped"))
                raise
            except Exception as exc:
                if not command.done.done():
                    command.done.set_exception(exc)
            else:
                if not command.done.done():
                    command.done.set_result(result)

    async def _handle(self, command: _Command) -> Any:
        if isinstance(command, _Register):
            return await self._handle_register(command.session)
        if isinstance(command, _Unregister):
            return await self._handle_unregister(command.session)
        if isinstance(command, _Deliver):
            return await self._handle_deliver(command.channel, command.payload)
        return set(self._sessions)

    async def _handle_register(self, session: "Session") -> None:
        channel = session.channel
        await self._bridge.join(channel)
        previous = self._sessions.get(channel)
        self._sessions[channel] = session
        if previous is not None and previous is not session:
            LOG.info("Replacing existing session for channel %s", channel)
            self._close_later(previous)
        LOG.info("Registered session for channel %s", channel)
        try:
            await self._send(session, {"version": self._version})
        except Exception:
            LOG.exception("Failed to send handshake to channel %s", channel)

    async def _handle_unregister(self, session: "Session") -> None:
        channel = session.channel
        if self._sessions.get(channel) is not session:
            LOG.debug("Ignoring unregister of displaced session for channel %s", channel)
            return
        del self._sessions[channel]
        LOG.info("Unregistered session for channel %s", channel)
        await self._bridge.part(channel)

    async def _handle_deliver(self, channel: str, payload: Any) -> None:
        session = self._sessions.get(channel)
        if session is None:
            raise NoSuchChannelError(channel)
        await self._send(session, payload)

    async def _send(self, session: "Session", payload: Any) -> None:
        try:
            await asyncio.wait_for(session.send_json(payload), timeout=self._write_timeout)
        except asyncio.TimeoutError:
            LOG.warning(
                "Write to channel %s timed out after %ss, closing its session",
                session.channel,
                self._write_timeout,
            )
            self._close_later(session)
            raise

    def _close_later(self, session: "Session") -> None:
        # A stalled peer can block its close handshake too; keep it off the loop.
        task = asyncio.create_task(session.close(), name=f"close-session-{session.channel}")
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)
