"""
auth/sync.py -- Cross-tab session sync: tell every open context to re-check.

Model: one channel per identity (all tabs of a signed-in client share the
session subject). The request that signs out is the single writer; every
open tab holding a subscription (GET /api/v1/auth/events) is a reader.

Messages are hints, not credentials. A receiver that sees "signout" goes back
to the server and asks whether its own session is still valid; it never
treats the payload as proof of anything. Delivery is fire-and-forget and at
most once per subscriber, so a receiver must tolerate duplicates and gaps.

Ordering contract for sign-out (see sign_out()):
  1. invalidate the authoritative session,
  2. broadcast "signout",
  3. refresh the local context.
Broadcasting first would let another tab re-read a session that is about to
disappear and render as signed-in.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Literal

logger = logging.getLogger("plannr.auth.sync")

EventType = Literal["signout", "signin"]
_EVENT_TYPES = ("signout", "signin")


@dataclass(frozen=True)
class AuthEvent:
    type: EventType
    ts: float = field(default_factory=time.time)

    @classmethod
    def signout(cls) -> AuthEvent:
        return cls(type="signout")

    @classmethod
    def signin(cls) -> AuthEvent:
        return cls(type="signin")

    @classmethod
    def parse(cls, raw: str | dict) -> AuthEvent | None:
        """Parse a JSON string or dict into an AuthEvent. None if unrecognized."""
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except ValueError:
                return None
        if not isinstance(raw, dict) or raw.get("type") not in _EVENT_TYPES:
            return None
        ts = raw.get("ts")
        return cls(type=raw["type"], ts=float(ts) if isinstance(ts, (int, float)) else time.time())

    def to_json(self) -> str:
        return json.dumps({"type": self.type, "ts": self.ts})

    def to_sse(self) -> str:
        return f"event: {self.type}\ndata: {self.to_json()}\n\n"


class Subscription:
    """One reader's end of a channel."""

    def __init__(self, key: str, maxsize: int) -> None:
        self.key = key
        self.loop = asyncio.get_running_loop()
        self.queue: asyncio.Queue[AuthEvent] = asyncio.Queue(maxsize=maxsize)

    def _offer(self, event: AuthEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            # A reader that stopped draining loses events, the writer never waits.
            logger.debug("Dropped %s event for a saturated subscriber on %s", event.type, self.key)

    async def get(self) -> AuthEvent:
        return await self.queue.get()

    def __aiter__(self) -> AsyncIterator[AuthEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[AuthEvent]:
        while True:
            yield await self.queue.get()


class SessionChannel:
    """In-process publish/subscribe keyed by identity id.

    publish() is safe to call from any thread (sync route handlers and
    background tasks run in the threadpool); each event is handed to the
    subscriber's own event loop.
    """

    def __init__(self, maxsize: int = 16) -> None:
        self._maxsize = maxsize
        self._lock = threading.Lock()
        self._subscribers: dict[str, set[Subscription]] = {}

    def publish(self, key: str, event: AuthEvent) -> int:
        """Deliver event to every current subscriber of key. Returns the count."""
        with self._lock:
            targets = list(self._subscribers.get(key, ()))
        for sub in targets:
            try:
                sub.loop.call_soon_threadsafe(sub._offer, event)
            except RuntimeError:
                # Subscriber's loop already closed; it will unregister itself.
                continue
        logger.debug("Published %s to %d subscriber(s) on %s", event.type, len(targets), key)
        return len(targets)

    @asynccontextmanager
    async def subscribe(self, key: str) -> AsyncIterator[Subscription]:
        sub = Subscription(key, self._maxsize)
        with self._lock:
            self._subscribers.setdefault(key, set()).add(sub)
        try:
            yield sub
        finally:
            with self._lock:
                subs = self._subscribers.get(key)
                if subs is not None:
                    subs.discard(sub)
                    if not subs:
                        del self._subscribers[key]

    def subscriber_count(self, key: str) -> int:
        with self._lock:
            return len(self._subscribers.get(key, ()))


class SessionSyncReceiver:
    """Receiver-side contract: any recognized auth event triggers refresh().

    refresh() is expected to re-query the session (GET /api/v1/auth/session);
    the event payload is never used to decide the new state. Handling the same
    event twice costs one extra refresh and nothing else.
    """

    def __init__(self, refresh: Callable[[], object]) -> None:
        self.refresh = refresh

    def handle(self, raw: str | dict | AuthEvent) -> bool:
        event = raw if isinstance(raw, AuthEvent) else AuthEvent.parse(raw)
        if event is None:
            return False
        self.refresh()
        return True


def sign_out(
    invalidate: Callable[[], object],
    broadcast: Callable[[], object],
    refresh: Callable[[], object],
) -> None:
    """Run the sign-out steps in their required order."""
    invalidate()
    broadcast()
    refresh()
