"""Realtime change-feed subscription.

Speaks the Phoenix channel protocol used by the Supabase realtime endpoint:
one websocket, one channel topic (``realtime:<name>``) joined with a
``postgres_changes`` binding per tracked table, periodic heartbeats on the
``phoenix`` topic. Connection phases are reported as :class:`RealtimeStatus`
strings; a dropped socket is retried with exponential backoff.
"""
import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

import aiohttp

from crewwatch.config import get_settings
from crewwatch.schemas.realtime import ChangeEvent, RealtimeStatus, parse_change_event
from crewwatch.services.supabase_client import SupabaseClient, SupabaseError

logger = logging.getLogger(__name__)

# Raw feed traffic; configured in main.py to write to its own file.
feed_logger = logging.getLogger("crewwatch.realtime")

JOIN_TIMEOUT_SECONDS = 10

EventCallback = Callable[[ChangeEvent], Union[Awaitable[None], None]]
StatusCallback = Callable[[RealtimeStatus], Union[Awaitable[None], None]]


class RealtimeError(RuntimeError):
    """The realtime channel could not be joined or kept alive."""


class RealtimeChannel:
    """A single shared subscription to row changes on a set of tables."""

    def __init__(
        self,
        client: SupabaseClient,
        channel: str,
        tables: Iterable[str],
        on_event: EventCallback,
        on_status: Optional[StatusCallback] = None,
        *,
        schema: str = "public",
        heartbeat_seconds: Optional[int] = None,
        reconnect_attempts: Optional[int] = None,
        reconnect_delay_seconds: Optional[float] = None,
    ):
        settings = get_settings()
        self.client = client
        self.channel = channel
        self.tables = tuple(tables)
        self.schema = schema
        self.on_event = on_event
        self.on_status = on_status
        self.heartbeat_seconds = heartbeat_seconds or settings.realtime_heartbeat_seconds
        self.max_reconnect_attempts = (
            settings.realtime_reconnect_attempts if reconnect_attempts is None else reconnect_attempts
        )
        self.reconnect_delay_seconds = (
            settings.realtime_reconnect_delay_seconds
            if reconnect_delay_seconds is None
            else reconnect_delay_seconds
        )

        self.status = RealtimeStatus.DISCONNECTED
        self.reconnect_attempts = 0
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._ref = 0
        self._join_ref: Optional[str] = None
        self._closing = False
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._join_timer_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._callback_tasks: set[asyncio.Task] = set()

    @property
    def topic(self) -> str:
        return f"realtime:{self.channel}"

    def _next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    def join_payload(self) -> dict[str, Any]:
        """Payload of the ``phx_join`` message."""
        return {
            "config": {
                "broadcast": {"ack": False, "self": False},
                "presence": {"key": ""},
                "postgres_changes": [
                    {"event": "*", "schema": self.schema, "table": table}
                    for table in self.tables
                ],
            },
            "access_token": self.client.access_token or self.client.anon_key,
        }

    # --- Lifecycle -----------------------------------------------------------------

    async def subscribe(self) -> None:
        """Open the socket and join the channel. Returns once the join was sent."""
        self._closing = False
        await self._connect()

    async def unsubscribe(self) -> None:
        """Leave the channel, close the socket and stop reconnecting."""
        self._closing = True

        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()

        ws = self._ws
        if ws is not None and not ws.closed:
            try:
                await self._send("phx_leave", {}, topic=self.topic)
            except Exception as e:
                logger.debug(f"Failed to send phx_leave for {self.topic}: {e}")
            await ws.close()
        self._ws = None

        tasks = [
            task
            for task in (self._reader_task, self._heartbeat_task, self._join_timer_task, self._reconnect_task)
            if task is not None and not task.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._set_status(RealtimeStatus.DISCONNECTED)
        logger.info(f"Unsubscribed from {self.topic}")

    async def update_access_token(self, access_token: str) -> None:
        """Hand a refreshed token to the joined channel; later joins read it from the client."""
        if self.status != RealtimeStatus.SUBSCRIBED or self._ws is None or self._ws.closed:
            return
        await self._send("access_token", {"access_token": access_token}, topic=self.topic)
        logger.info(f"Pushed refreshed access token to {self.topic}")

    async def _connect(self) -> None:
        self._set_status(RealtimeStatus.CONNECTING)
        try:
            ws = await self.client.ws_connect()
        except SupabaseError as e:
            logger.error(f"Realtime connection failed for {self.topic}: {e}")
            self._set_status(RealtimeStatus.CHANNEL_ERROR)
            self._schedule_reconnect()
            return

        if self._join_timer_task and not self._join_timer_task.done():
            self._join_timer_task.cancel()

        self._ws = ws
        self._join_ref = self._next_ref()
        await self._send("phx_join", self.join_payload(), topic=self.topic, ref=self._join_ref)
        logger.info(f"Joining {self.topic} for tables {', '.join(self.tables)}")

        self._reader_task = asyncio.create_task(self._read_loop(ws))
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws))
        self._join_timer_task = asyncio.create_task(self._join_timer(ws, self._join_ref))

    def _schedule_reconnect(self) -> None:
        if self._closing:
            return
        if self.reconnect_attempts >= self.max_reconnect_attempts:
            logger.error(f"Max reconnection attempts reached for {self.topic}")
            return

        self.reconnect_attempts += 1
        delay = self.reconnect_delay_seconds * (2 ** (self.reconnect_attempts - 1))
        logger.info(
            f"Reconnecting to {self.topic} in {delay:.1f}s "
            f"(attempt {self.reconnect_attempts}/{self.max_reconnect_attempts})"
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if not self._closing:
            await self._connect()

    # --- Wire ----------------------------------------------------------------------

    async def _send(
        self,
        event: str,
        payload: dict[str, Any],
        *,
        topic: str,
        ref: Optional[str] = None,
    ) -> None:
        if self._ws is None or self._ws.closed:
            raise RealtimeError(f"Cannot send {event}: socket is not open")
        message = {
            "topic": topic,
            "event": event,
            "payload": payload,
            "ref": ref or self._next_ref(),
            "join_ref": self._join_ref,
        }
        text = json.dumps(message, default=str)
        feed_logger.debug(f"-> {text}")
        await self._ws.send_str(text)

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self.handle_message(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error(f"Realtime socket error on {self.topic}: {ws.exception()}")
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error reading realtime feed: {e}", exc_info=True)

        if self._heartbeat_task and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()

        if not self._closing:
            self._set_status(RealtimeStatus.CLOSED)
            self._schedule_reconnect()

    async def _heartbeat_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while not ws.closed:
            await asyncio.sleep(self.heartbeat_seconds)
            try:
                await self._send("heartbeat", {}, topic="phoenix")
            except Exception as e:
                logger.warning(f"Realtime heartbeat failed on {self.topic}: {e}")
                return

    async def _join_timer(self, ws: aiohttp.ClientWebSocketResponse, join_ref: str) -> None:
        await asyncio.sleep(JOIN_TIMEOUT_SECONDS)
        if self._join_ref == join_ref and self.status == RealtimeStatus.CONNECTING:
            logger.error(f"Timed out joining {self.topic}")
            self._set_status(RealtimeStatus.TIMED_OUT)
            await ws.close()

    def handle_message(self, raw: str) -> None:
        """Process one text frame from the socket."""
        feed_logger.debug(f"<- {raw}")
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning(f"Ignoring non-JSON realtime frame: {raw[:200]}")
            return
        if not isinstance(message, dict) or message.get("topic") != self.topic:
            return

        event = message.get("event")
        payload = message.get("payload") or {}

        if event == "phx_reply" and message.get("ref") == self._join_ref:
            if payload.get("status") == "ok":
                self.reconnect_attempts = 0
                self._set_status(RealtimeStatus.SUBSCRIBED)
            else:
                logger.error(f"Realtime join rejected for {self.topic}: {payload.get('response')}")
                self._set_status(RealtimeStatus.CHANNEL_ERROR)
        elif event == "postgres_changes":
            data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
            self._invoke(self.on_event, parse_change_event(data))
        elif event == "phx_error":
            logger.error(f"Realtime channel error on {self.topic}: {payload}")
            self._set_status(RealtimeStatus.CHANNEL_ERROR)
        elif event == "phx_close":
            self._set_status(RealtimeStatus.CLOSED)
        elif event == "system" and payload.get("status") == "error":
            logger.error(f"Realtime system error on {self.topic}: {payload.get('message')}")

    # --- Callbacks -----------------------------------------------------------------

    def _set_status(self, status: RealtimeStatus) -> None:
        if status == self.status:
            return
        logger.info(f"Realtime status for {self.topic}: {self.status.value} -> {status.value}")
        self.status = status
        if self.on_status is not None:
            self._invoke(self.on_status, status)

    def _invoke(self, callback: Callable[[Any], Any], argument: Any) -> None:
        """Call a subscriber; coroutines run in the background so the reader never blocks on them."""
        try:
            result = callback(argument)
        except Exception as e:
            logger.error(f"Error in realtime subscriber for {self.topic}: {e}")
            return
        if not inspect.isawaitable(result):
            return
        task = asyncio.ensure_future(result)
        self._callback_tasks.add(task)
        task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Task) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Error in realtime subscriber for {self.topic}: {exc}")
