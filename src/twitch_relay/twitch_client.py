"""Twitch IRC integration."""

from __future__ import annotations

import asyncio
import logging
import socket
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence, Set

import pydle

from .auth import canonical_channel
from .config import TwitchConfig
from .schemas import (
    ChatEvent,
    ChatUser,
    Emote,
    EmotePosition,
    PrivateMessageEvent,
    UserNoticeEvent,
)

LOG = logging.getLogger(__name__)

TRANSIENT_RETRY_SECONDS = 5.0

_ACTION_PREFIX = "\x01ACTION "


def is_transient_connect_error(exc: BaseException) -> bool:
    """True when the failure is a name-resolution error for the chat endpoint."""
    seen: Set[int] = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, socket.gaierror):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False


def _tag_str(value: object) -> str:
    if value is None or value is True:
        return ""
    return str(value)


def _parse_badges(value: str) -> Dict[str, int]:
    badges: Dict[str, int] = {}
    for item in filter(None, value.split(",")):
        name, _, version = item.partition("/")
        try:
            badges[name] = int(version)
        except ValueError:
            badges[name] = 0
    return badges


def _parse_emotes(value: str, message: str) -> List[Emote]:
    # Positions index code points, e.g. "25:0-4,12-16/1902:6-10".
    emotes: List[Emote] = []
    for item in filter(None, value.split("/")):
        emote_id, _, ranges = item.partition(":")
        positions: List[EmotePosition] = []
        for span in filter(None, ranges.split(",")):
            start, _, end = span.partition("-")
            try:
                positions.append(EmotePosition(start=int(start), end=int(end)))
            except ValueError:
                continue
        if not positions:
            continue
        first = positions[0]
        emotes.append(
            Emote(
                name=message[first.start : first.end + 1],
                id=emote_id,
                count=len(positions),
                positions=positions,
            )
        )
    return emotes


def _parse_time(value: str) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except ValueError:
        return None


def parse_chat_event(
    command: str,
    params: Sequence[str],
    source: Optional[str],
    tags: Mapping[str, object],
    raw: str = "",
) -> Optional[ChatEvent]:
    """Build the event forwarded to clients from a PRIVMSG or USERNOTICE line."""
    command = command.upper()
    if command not in {"PRIVMSG", "USERNOTICE"} or not params:
        return None
    text_tags = {key: _tag_str(value) for key, value in tags.items()}
    channel = canonical_channel(params[0])
    message = params[1] if len(params) > 1 else ""
    login = (source or "").split("!", 1)[0]
    user = ChatUser(
        id=text_tags.get("user-id", ""),
        name=text_tags.get("login") or login,
        display_name=text_tags.get("display-name", ""),
        color=text_tags.get("color", ""),
        badges=_parse_badges(text_tags.get("badges", "")),
    )
    action = False
    if command == "PRIVMSG" and message.startswith(_ACTION_PREFIX) and message.endswith("\x01"):
        action = True
        message = message[len(_ACTION_PREFIX) : -1]
    common = dict(
        user=user,
        raw=raw,
        tags=text_tags,
        message=message,
        channel=channel,
        room_id=text_tags.get("room-id", ""),
        id=text_tags.get("id", ""),
        time=_parse_time(text_tags.get("tmi-sent-ts", "")),
        emotes=_parse_emotes(text_tags.get("emotes", ""), message),
    )
    if command == "PRIVMSG":
        try:
            bits = int(text_tags.get("bits") or 0)
        except ValueError:
            bits = 0
        return PrivateMessageEvent(
            **common,
            bits=bits,
            action=action,
            first_message=text_tags.get("first-msg") == "1",
        )
    return UserNoticeEvent(
        **common,
        msg_id=text_tags.get("msg-id", ""),
        msg_params={
            key: value for key, value in text_tags.items() if key.startswith("msg-param-")
        },
        system_msg=text_tags.get("system-msg", ""),
    )


class RelayTwitchClient(pydle.Client):
    """pydle client that publishes channel messages into the bridge."""

    # The bridge owns reconnection.
    RECONNECT_ON_ERROR = False

    def __init__(self, bridge: "ChatBridge", nickname: str, **kwargs):
        super().__init__(nickname, **kwargs)
        self._bridge = bridge
        self._closed = asyncio.Event()

    async def on_capability_twitch_tv_tags_available(self, value) -> bool:
        return True

    async def on_capability_twitch_tv_commands_available(self, value) -> bool:
        return True

    async def on_connect(self) -> None:
        await super().on_connect()
        LOG.info("Connected to Twitch chat as %s", self.nickname)
        for channel in sorted(self._bridge.channels):
            await self.join_channel(channel)

    async def on_disconnect(self, expected: bool) -> None:
        await super().on_disconnect(expected)
        self._closed.set()

    async def handle_forever(self) -> None:
        # pydle only handles read timeouts here; a reset socket would end the
        # read task without ever reporting the disconnect.
        try:
            await super().handle_forever()
        except (OSError, asyncio.IncompleteReadError) as exc:
            LOG.warning("Twitch chat connection lost: %s", exc)
            await self.disconnect(expected=False)
        finally:
            self._closed.set()

    async def on_raw_privmsg(self, message) -> None:
        self._publish(message)
        await super().on_raw_privmsg(message)

    async def on_raw_usernotice(self, message) -> None:
        self._publish(message)

    def _publish(self, message) -> None:
        event = parse_chat_event(
            message.command,
            list(message.params),
            message.source,
            getattr(message, "tags", None) or {},
            str(message),
        )
        if event is not None:
            self._bridge.publish(event)

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def join_channel(self, channel: str) -> None:
        await self.rawmsg("JOIN", f"#{channel}")

    async def part_channel(self, channel: str) -> None:
        await self.rawmsg("PART", f"#{channel}")

    async def reply(self, channel: str, parent_id: str, text: str) -> None:
        tags = {"reply-parent-msg-id": parent_id} if parent_id else {}
        await self.rawmsg("PRIVMSG", f"#{channel}", text, tags=tags)


ClientFactory = Callable[["ChatBridge"], RelayTwitchClient]


class ChatBridge:
    """Owns the single Twitch chat connection and its reconnect loop."""

    def __init__(
        self,
        config: TwitchConfig,
        *,
        client_factory: Optional[ClientFactory] = None,
        transient_backoff_seconds: float = TRANSIENT_RETRY_SECONDS,
    ):
        self._config = config
        self._client_factory = client_factory or self._default_client
        self._transient_backoff_seconds = transient_backoff_seconds
        self._channels: Set[str] = set()
        self._client: Optional[RelayTwitchClient] = None
        self._events: asyncio.Queue[ChatEvent] = asyncio.Queue()
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None

    def _default_client(self, bridge: "ChatBridge") -> RelayTwitchClient:
        return RelayTwitchClient(bridge, self._config.username)

    @property
    def channels(self) -> FrozenSet[str]:
        return frozenset(self._channels)

    @property
    def connected(self) -> bool:
        return self._client is not None and bool(self._client.connected)

    async def start(self) -> None:
        if self._task:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="twitch-connect-loop")

    async def stop(self) -> None:
        self._stop.set()
        client = self._client
        if client is not None and client.connected:
            try:
                await client.disconnect(expected=True)
            except Exception:
                LOG.exception("Error while disconnecting from Twitch chat")
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def connect(self) -> None:
        """Connect once and return when the connection is gone."""
        client = self._client_factory(self)
        self._client = client
        try:
            try:
                await client.connect(
                    hostname=self._config.host,
                    port=self._config.port,
                    tls=self._config.tls,
                    password=f"oauth:{self._config.resolved_oauth_token()}",
                )
            except Exception:
                if client.connected:
                    await client.disconnect(expected=True)
                raise
            await client.wait_closed()
        finally:
            self._client = None

    async def _attempt(self) -> float:
        """Run one connection attempt; return the delay before the next one."""
        try:
            await self.connect()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if is_transient_connect_error(exc):
                LOG.info(
                    "Connection error, retrying in %s seconds",
                    self._transient_backoff_seconds,
                )
                return self._transient_backoff_seconds
            LOG.error("Twitch chat connection failed: %s", exc)
            return 0.0
        LOG.warning("Twitch chat connection closed, reconnecting")
        return 0.0

    async def _run(self) -> None:
        while not self._stop.is_set():
            delay = await self._attempt()
            if delay <= 0:
                await asyncio.sleep(0)
                continue
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    async def join(self, channel: str) -> None:
        channel = canonical_channel(channel)
        self._channels.add(channel)
        client = self._client
        if client is None or not client.connected:
            LOG.debug("Not connected, %s will be joined on connect", channel)
            return
        try:
            await client.join_channel(channel)
        except Exception:
            LOG.exception("Failed to join channel %s", channel)

    async def part(self, channel: str) -> None:
        channel = canonical_channel(channel)
        self._channels.discard(channel)
        client = self._client
        if client is None or not client.connected:
            return
        try:
            await client.part_channel(channel)
        except Exception:
            LOG.exception("Failed to part channel %s", channel)

    async def reply(self, channel: str, target_id: str, text: str) -> None:
        client = self._client
        if client is None or not client.connected:
            LOG.warning("Dropping reply to %s: not connected to Twitch chat", channel)
            return
        try:
            await client.reply(canonical_channel(channel), target_id, text)
        except Exception:
            LOG.exception("Failed to send reply to channel %s", channel)

    def publish(self, event: ChatEvent) -> None:
        self._events.put_nowait(event)

    async def events(self) -> AsyncIterator[ChatEvent]:
        while True:
            yield await self._events.get()
