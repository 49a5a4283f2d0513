"""Nostr relay websocket client used as the backup transport."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, TypedDict
from uuid import uuid4

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .types import EventKind, RelayError

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────────────────
# Nostr protocol types
# ──────────────────────────────────────────────────────────────────────────────


class NostrEvent(TypedDict):
    """Nostr event structure."""

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: list[list[str]]
    content: str
    sig: str


class NostrFilter(TypedDict, total=False):
    """Filter for REQ subscriptions."""

    ids: list[str]
    authors: list[str]
    kinds: list[int]
    since: int
    until: int
    limit: int


# ──────────────────────────────────────────────────────────────────────────────
# Relay client
# ──────────────────────────────────────────────────────────────────────────────


class NostrRelay:
    """Minimal Nostr relay client: publish and one-shot fetch."""

    def __init__(
        self, url: str, *, connect_timeout: float = 5.0, ok_timeout: float = 10.0
    ) -> None:
        """Initialize relay client.

        Args:
            url: Relay websocket URL (e.g. "wss://relay.damus.io")
        """
        self.url = url
        self.connect_timeout = connect_timeout
        self.ok_timeout = ok_timeout
        self.ws: Any = None
        self._io_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self.ws is not None and self.ws.close_code is None

    async def connect(self) -> None:
        """Connect to the relay."""
        if self.connected:
            return
        try:
            async with asyncio.timeout(self.connect_timeout):
                self.ws = await websockets.connect(
                    self.url, ping_interval=20, ping_timeout=10, close_timeout=10
                )
        except TimeoutError as e:
            raise RelayError(f"Connection timeout: {self.url}") from e
        except (OSError, WebSocketException) as e:
            raise RelayError(f"Connection to {self.url} failed: {e}") from e

    async def disconnect(self) -> None:
        """Disconnect from the relay."""
        if self.connected:
            await self.ws.close()

    async def _send(self, message: list[Any]) -> None:
        if not self.connected:
            raise RelayError("Not connected to relay")
        await self.ws.send(json.dumps(message))

    async def _recv(self) -> list[Any]:
        if not self.connected:
            raise RelayError("Not connected to relay")
        data = await self.ws.recv()
        return json.loads(data)

    # ───────────────────────── Publishing Events ─────────────────────────────────

    async def publish_event(self, event: NostrEvent | dict[str, Any]) -> bool:
        """Publish an event to the relay.

        Returns True if accepted, False if rejected or no OK arrived in time.

        Raises:
            RelayError: If the relay can't be reached
        """
        async with self._io_lock:
            await self.connect()
            try:
                await self._send(["EVENT", event])
                async with asyncio.timeout(self.ok_timeout):
                    while True:
                        msg = await self._recv()
                        if msg[0] == "OK" and msg[1] == event["id"]:
                            if not msg[2]:
                                logger.warning(
                                    "%s rejected event: %s", self.url, msg[3] if len(msg) > 3 else ""
                                )
                            return bool(msg[2])
                        if msg[0] == "NOTICE":
                            logger.info("Relay notice from %s: %s", self.url, msg[1])
            except TimeoutError:
                logger.warning("Timeout waiting for OK response from %s", self.url)
                return False
            except ConnectionClosed as e:
                raise RelayError(f"{self.url} closed the connection") from e

    # ───────────────────────── Fetching Events ─────────────────────────────────

    async def fetch_events(
        self,
        filters: list[NostrFilter],
        *,
        timeout: float = 5.0,
    ) -> list[NostrEvent]:
        """Fetch stored events matching filters, until EOSE or ``timeout``."""
        async with self._io_lock:
            await self.connect()
            sub_id = str(uuid4())
            events: list[NostrEvent] = []
            await self._send(["REQ", sub_id, *filters])
            try:
                async with asyncio.timeout(timeout):
                    while True:
                        msg = await self._recv()
                        if msg[0] == "EVENT" and msg[1] == sub_id:
                            events.append(msg[2])
                        elif msg[0] == "EOSE" and msg[1] == sub_id:
                            break
                        elif msg[0] == "CLOSED" and msg[1] == sub_id:
                            raise RelayError(f"{self.url} closed subscription: {msg[2:]}")
            except TimeoutError:
                logger.debug("No EOSE from %s within %.1fs", self.url, timeout)
            except ConnectionClosed as e:
                raise RelayError(f"{self.url} closed the connection") from e
            else:
                await self._send(["CLOSE", sub_id])
            return events

    async def fetch_wallet_events(
        self, pubkey: str, kinds: list[int] | None = None
    ) -> list[NostrEvent]:
        """Fetch backup events authored by ``pubkey``."""
        if kinds is None:
            kinds = [EventKind.Wallet, EventKind.Token]
        return await self.fetch_events([{"authors": [pubkey], "kinds": kinds}])


class RelayPool:
    """Several relays used together as one backup transport.

    Publishing succeeds if at least one relay accepts; fetching merges the
    answers of every reachable relay, deduplicated by event id.
    """

    def __init__(self, urls: list[str], **relay_kwargs: Any) -> None:
        if not urls:
            raise RelayError("At least one relay URL is required")
        self.relays = [NostrRelay(url, **relay_kwargs) for url in urls]

    async def publish(self, event: dict[str, Any]) -> bool:
        results = await asyncio.gather(
            *(relay.publish_event(event) for relay in self.relays), return_exceptions=True
        )
        accepted = 0
        for relay, result in zip(self.relays, results):
            if isinstance(result, RelayError):
                logger.warning("Publish to %s failed: %s", relay.url, result)
            elif isinstance(result, BaseException):
                raise result
            elif result:
                accepted += 1
        if not accepted:
            raise RelayError(f"No relay accepted event {event['id']}")
        return True

    async def fetch(self, author: str, kinds: list[int]) -> list[dict[str, Any]]:
        results = await asyncio.gather(
            *(relay.fetch_wallet_events(author, kinds) for relay in self.relays),
            return_exceptions=True,
        )
        events: dict[str, dict[str, Any]] = {}
        reachable = 0
        for relay, result in zip(self.relays, results):
            if isinstance(result, RelayError):
                logger.warning("Fetch from %s failed: %s", relay.url, result)
                continue
            if isinstance(result, BaseException):
                raise result
            reachable += 1
            for event in result:
                events.setdefault(event["id"], dict(event))
        if not reachable:
            raise RelayError("No relay could be reached")
        return list(events.values())

    async def connect_all(self) -> None:
        await asyncio.gather(*(relay.connect() for relay in self.relays), return_exceptions=True)

    async def disconnect_all(self) -> None:
        for relay in self.relays:
            await relay.disconnect()

    async def aclose(self) -> None:
        await self.disconnect_all()
