from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Dict, Optional

import aiohttp

from .errors import InvalidEvent, NetworkFailure
from .events import PushEvent, Subscriber, event_frame, parse_event
from .hub import Subscription, SubscriptionHub

logger = logging.getLogger(__name__)


class WsPushChannel:
    """Push channel over the ``/v1/ws`` websocket.

    Frames are validated with :func:`parse_event` before they reach any
    subscriber; local fan-out goes through a :class:`SubscriptionHub`.
    """

    def __init__(self, session: aiohttp.ClientSession, url: str, user_id: str) -> None:
        self._session = session
        self._url = url
        self.user_id = user_id
        self._hub = SubscriptionHub()
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._outbound: asyncio.Queue[Optional[Dict[str, Any]]] = asyncio.Queue()
        self._reader_task: asyncio.Task | None = None
        self._writer_task: asyncio.Task | None = None
        self._confirmed: Dict[str, asyncio.Event] = {}
        self._ids = itertools.count(1)

    async def connect(self) -> None:
        try:
            self._ws = await self._session.ws_connect(
                self._url, headers={"Authorization": f"Bearer {self.user_id}"}
            )
            ready = await self._ws.receive_json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise NetworkFailure(str(exc) or type(exc).__name__) from exc
        if ready.get("t") != "session.ready":
            await self._ws.close()
            raise NetworkFailure(f"unexpected handshake frame {ready.get('t')}")
        self._reader_task = asyncio.create_task(self._reader())
        self._writer_task = asyncio.create_task(self._writer())

    async def close(self) -> None:
        if self._writer_task is not None:
            self._outbound.put_nowait(None)
            await asyncio.gather(self._writer_task, return_exceptions=True)
            self._writer_task = None
        if self._ws is not None:
            await self._ws.close()
        if self._reader_task is not None:
            self._reader_task.cancel()
            await asyncio.gather(self._reader_task, return_exceptions=True)
            self._reader_task = None

    def _send(self, frame_type: str, body: Dict[str, Any]) -> None:
        self._outbound.put_nowait({"v": 1, "t": frame_type, "id": f"c{next(self._ids)}", "body": body})

    async def _writer(self) -> None:
        try:
            while True:
                frame = await self._outbound.get()
                if frame is None or self._ws is None or self._ws.closed:
                    return
                await self._ws.send_json(frame)
        except asyncio.CancelledError:
            return

    async def _reader(self) -> None:
        if self._ws is None:
            return
        try:
            async for msg in self._ws:
                if msg.type != aiohttp.WSMsgType.TEXT:
                    if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                        break
                    continue
                try:
                    frame = msg.json()
                except ValueError:
                    logger.warning("dropping malformed push frame")
                    continue
                self._dispatch(frame)
        except asyncio.CancelledError:
            return

    def _dispatch(self, frame: Any) -> None:
        if not isinstance(frame, dict):
            logger.warning("dropping push frame that is not an object")
            return
        frame_type = frame.get("t")
        body = frame.get("body") or {}
        if frame_type == "event":
            topic = body.get("topic")
            try:
                event = parse_event(body.get("event"))
            except InvalidEvent as exc:
                logger.warning("dropping invalid push event on %s: %s", topic, exc)
                return
            if isinstance(topic, str):
                self._hub.publish(topic, event)
        elif frame_type == "subscribed":
            self._confirmation(body.get("topic")).set()
        elif frame_type == "ping":
            self._send("pong", {})
        elif frame_type == "error":
            logger.warning("push channel error: %s", body.get("message"))

    def _confirmation(self, topic: Any) -> asyncio.Event:
        return self._confirmed.setdefault(str(topic), asyncio.Event())

    async def wait_subscribed(self, topic: str, timeout_s: float = 5.0) -> None:
        await asyncio.wait_for(self._confirmation(topic).wait(), timeout_s)

    def subscribe(self, owner_id: str, topic: str, subscriber: Subscriber) -> Subscription:
        first = self._hub.subscriber_count(topic) == 0
        subscription = self._hub.subscribe(owner_id, topic, subscriber)
        if first:
            self._confirmed.pop(topic, None)
            self._send("subscribe", {"topic": topic})
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._hub.unsubscribe(subscription)
        if self._hub.subscriber_count(subscription.topic) == 0:
            self._confirmed.pop(subscription.topic, None)
            self._send("unsubscribe", {"topic": subscription.topic})

    def publish(self, topic: str, event: PushEvent) -> None:
        self._send("publish", {"topic": topic, "event": event_frame(event)})
