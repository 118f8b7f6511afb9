"""Transport adapters — opaque byte payloads to and from a broadcast group.

A transport behaves like a group chat channel: a payload sent to the group
reaches every member (the sender included), at least once, with no ordering
guarantee across senders. Inbound payloads wait in a mailbox until the pump
drains them.

    LocalHub / LocalTransport — in-process group, for tests and single-machine play.
    HttpTransport             — client for the relay service (storysync.relay).
    Pump                      — periodic task feeding inbound payloads to a handler.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Inbound:
    sender_identity: str
    data: bytes


class TransportError(RuntimeError):
    """Raised when a payload cannot be sent or the mailbox cannot be read."""


class Transport(Protocol):
    identity: str
    group_id: str | None
    max_payload_bytes: int

    async def send(self, group_id: str, data: bytes) -> None: ...

    async def receive(self) -> list[Inbound]: ...


# ---------------------------------------------------------------------------
# In-process group
# ---------------------------------------------------------------------------

class LocalHub:
    """A set of in-process groups.

    With `duplicate=True` every payload is delivered twice to each member,
    which is how tests exercise at-least-once delivery.
    """

    def __init__(self, max_payload_bytes: int = 4096, duplicate: bool = False) -> None:
        self.max_payload_bytes = max_payload_bytes
        self.duplicate = duplicate
        self._groups: dict[str, dict[str, LocalTransport]] = {}

    def join(self, identity: str, group_id: str = "local") -> LocalTransport:
        transport = LocalTransport(self, identity, group_id)
        self._groups.setdefault(group_id, {})[identity] = transport
        return transport

    def leave(self, transport: LocalTransport) -> None:
        if transport.group_id is None:
            return
        self._groups.get(transport.group_id, {}).pop(transport.identity, None)
        transport.group_id = None

    def members(self, group_id: str) -> list[str]:
        return list(self._groups.get(group_id, {}))

    def _broadcast(self, group_id: str, sender: str, data: bytes) -> None:
        if len(data) > self.max_payload_bytes:
            raise TransportError(
                f"payload of {len(data)} bytes exceeds limit of {self.max_payload_bytes}"
            )
        members = self._groups.get(group_id, {})
        if sender not in members:
            raise TransportError(f"{sender} is not a member of group {group_id}")
        copies = 2 if self.duplicate else 1
        for member in members.values():
            for _ in range(copies):
                member._mailbox.append(Inbound(sender, data))


class LocalTransport:
    def __init__(self, hub: LocalHub, identity: str, group_id: str) -> None:
        self._hub = hub
        self._mailbox: deque[Inbound] = deque()
        self.identity = identity
        self.group_id: str | None = group_id

    @property
    def max_payload_bytes(self) -> int:
        return self._hub.max_payload_bytes

    async def send(self, group_id: str, data: bytes) -> None:
        self._hub._broadcast(group_id, self.identity, data)

    async def receive(self) -> list[Inbound]:
        items = list(self._mailbox)
        self._mailbox.clear()
        return items


# ---------------------------------------------------------------------------
# Relay client
# ---------------------------------------------------------------------------

class HttpTransport:
    """Talks to a relay service over HTTP.

    Args:
        relay_url:         Base URL of the relay, e.g. "http://localhost:13015".
        identity:          This peer's identity within the group.
        max_payload_bytes: Largest payload the relay accepts.
        timeout:           HTTP timeout in seconds.
        client:            Pre-built httpx client (tests pass an ASGI-backed one).
    """

    def __init__(
        self,
        relay_url: str,
        identity: str,
        max_payload_bytes: int = 4096,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = relay_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self._base_url, timeout=timeout)
        self.identity = identity
        self.group_id: str | None = None
        self.max_payload_bytes = max_payload_bytes

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, **kwargs)
            resp.raise_for_status()
        except httpx.ConnectError as e:
            raise TransportError(f"Cannot connect to relay at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise TransportError(f"Relay returned HTTP {e.response.status_code}") from e
        except httpx.TimeoutException as e:
            raise TransportError("Relay timed out") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Relay request failed: {e!r}") from e
        return resp

    async def join(self, group_id: str) -> None:
        await self._request("POST", f"/api/groups/{group_id}/members/{self.identity}")
        self.group_id = group_id
        logger.info("joined group %s as %s", group_id, self.identity)

    async def leave(self) -> None:
        if self.group_id is None:
            return
        group_id, self.group_id = self.group_id, None
        await self._request("DELETE", f"/api/groups/{group_id}/members/{self.identity}")

    async def send(self, group_id: str, data: bytes) -> None:
        await self._request(
            "POST",
            f"/api/groups/{group_id}/messages",
            json={"sender": self.identity, "data": base64.b64encode(data).decode("ascii")},
        )

    async def receive(self) -> list[Inbound]:
        if self.group_id is None:
            return []
        resp = await self._request(
            "GET", f"/api/groups/{self.group_id}/members/{self.identity}/messages",
        )
        try:
            messages = resp.json().get("messages", [])
        except (ValueError, AttributeError) as e:
            raise TransportError("Relay returned a malformed mailbox") from e
        inbound: list[Inbound] = []
        for item in messages:
            try:
                inbound.append(Inbound(item["sender"], base64.b64decode(item["data"])))
            except (KeyError, TypeError, ValueError):
                logger.warning("relay returned a malformed mailbox entry: %r", item)
        return inbound

    async def aclose(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# Pump
# ---------------------------------------------------------------------------

Handler = Callable[[str, bytes], Awaitable[None]]


class Pump:
    """Drains a transport's mailbox every `interval` seconds.

    The handler runs on the pump's task, so it must not await long work;
    the game controller hands turns off to the engine's own task.
    """

    def __init__(self, transport: Transport, handler: Handler, interval: float = 0.016) -> None:
        self._transport = transport
        self._handler = handler
        self._interval = interval
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    async def drain_once(self) -> int:
        try:
            inbound = await self._transport.receive()
        except TransportError as e:
            logger.warning("receive failed: %s", e)
            return 0
        for item in inbound:
            await self._handler(item.sender_identity, item.data)
        return len(inbound)

    async def run(self) -> None:
        while not self._stopping.is_set():
            await self.drain_once()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> asyncio.Task:
        self._stopping.clear()
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
