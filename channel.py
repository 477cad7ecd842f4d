# FILE: channel.py  # reconnecting push channel shared by the request and location-share feeds

import asyncio  # event loop
import inspect  # awaitable check
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union  # typing
from urllib.parse import quote  # query escaping

import websockets  # WebSocket client
from websockets.exceptions import WebSocketException  # protocol errors

from config import LOCATION_CHANNEL_MAX_DELAY, RECONNECT_INITIAL_DELAY, REQUEST_CHANNEL_MAX_DELAY, WS_BASE_URL, setup_logger
from schemas import parse_envelope

logger = setup_logger("yolsepeti.channel", "CHANNEL")  # channel logger

Envelope = Dict[str, Any]
Handler = Callable[[Envelope], Union[None, Awaitable[None]]]

CONNECT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)  # reconnectable


class BackoffPolicy:  # k-th retry waits min(initial * 2**(k-1), ceiling)
    def __init__(self, ceiling: float, initial: float = RECONNECT_INITIAL_DELAY, factor: float = 2.0):
        self.initial = initial
        self.ceiling = ceiling
        self.factor = factor
        self.current = initial

    def next_delay(self) -> float:
        delay = self.current
        self.current = min(self.current * self.factor, self.ceiling)
        return delay

    def reset(self) -> None:  # after every successful open
        self.current = self.initial


class LiveChannel:
    """Persistent push connection identified by a connection key.

    ``set_key`` changes identity: any existing connection is torn down and,
    for a non-None key, a fresh connect loop starts. The loop reconnects with
    capped exponential backoff until the channel is closed, the key changes,
    or ``is_terminal`` accepts a message. A key that received its terminal
    message is spent: it is never reopened, even after the key was cleared
    or changed in between; only a fresh key starts a new session.

    Payloads that are not JSON objects with a string ``type`` are dropped
    without closing the connection.
    """

    def __init__(self, name: str, url_for: Callable[[str], str], on_message: Handler, max_delay: float,
                 is_terminal: Optional[Callable[[Envelope], bool]] = None, connect=None, sleep=None,
                 initial_delay: float = RECONNECT_INITIAL_DELAY):
        self.name = name
        self._url_for = url_for
        self._on_message = on_message
        self._is_terminal = is_terminal
        self._connect = connect or websockets.connect
        self._sleep = sleep or asyncio.sleep
        self.backoff = BackoffPolicy(max_delay, initial_delay)
        self._key: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._ws = None
        self._connected = False
        self._finished = False  # terminal message seen for the current key
        self._spent: Set[str] = set()  # keys that saw their terminal message
        self._closed = False  # owner torn down
        self.attempts = 0  # connection attempts issued

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def key(self) -> Optional[str]:
        return self._key

    @property
    def finished(self) -> bool:
        return self._finished

    async def set_key(self, key: Optional[str]) -> None:
        if self._closed or key == self._key:
            return
        await self._teardown()
        self._key = key
        self._finished = key in self._spent
        if key is None:
            logger.info(f"{self.name}: key cleared, reconnection stopped")
            return
        if self._finished:
            logger.info(f"{self.name}: session already finished, not reopening")
            return
        self.backoff.reset()
        self._task = asyncio.ensure_future(self._run(key))

    async def close(self) -> None:  # permanent
        self._closed = True
        self._key = None
        await self._teardown()

    async def wait_closed(self) -> None:  # until the connect loop exits on its own
        if self._task is not None:
            await asyncio.shield(self._task)

    # -------------------- internals --------------------

    def _active(self, key: str) -> bool:
        return not self._closed and not self._finished and self._key == key

    async def _teardown(self) -> None:
        task, self._task = self._task, None
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except CONNECT_ERRORS as e:
                logger.debug(f"{self.name}: close failed: {e}")
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._connected = False

    async def _run(self, key: str) -> None:
        url = self._url_for(key)
        while self._active(key):
            self.attempts += 1
            try:
                async with self._connect(url) as ws:
                    self._ws = ws
                    self._connected = True
                    self.backoff.reset()
                    logger.info(f"{self.name}: connected")
                    async for raw in ws:
                        await self._dispatch(raw, key)
                        if not self._active(key):
                            break
            except CONNECT_ERRORS as e:
                logger.warning(f"{self.name}: connection error: {e}")
            finally:
                self._ws = None
                self._connected = False
            if not self._active(key):
                break
            delay = self.backoff.next_delay()
            logger.info(f"{self.name}: reconnecting in {delay:.1f}s")
            await self._sleep(delay)

    async def _dispatch(self, raw, key: str) -> None:
        envelope = parse_envelope(raw)
        if envelope is None:
            logger.debug(f"{self.name}: dropped malformed payload")
            return
        if self._is_terminal is not None and self._is_terminal(envelope):
            self._finished = True  # single-shot: no reconnect from here on
            self._spent.add(key)
        try:
            result = self._on_message(envelope)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"{self.name}: handler failed for type={envelope.get('type')}: {e}")


# -------------------- Channel flavours --------------------

def request_updates_url(tracking_token: str) -> str:
    return f"{WS_BASE_URL}/ws/requests/{tracking_token}/"


def build_location_share_url(ws_url: str, access_token: str) -> str:  # credential-qualified, pre-built
    return f"{WS_BASE_URL}/{ws_url.strip('/')}/?auth={quote(access_token or '', safe='')}"


def request_channel(on_message: Handler, connect=None, sleep=None) -> LiveChannel:  # keyed by tracking token
    return LiveChannel("requests", request_updates_url, on_message, REQUEST_CHANNEL_MAX_DELAY,
                       connect=connect, sleep=sleep)


def location_share_channel(on_message: Handler, is_terminal: Callable[[Envelope], bool], connect=None,
                           sleep=None) -> LiveChannel:  # keyed by the full pre-built URL
    return LiveChannel("location-share", lambda url: url, on_message, LOCATION_CHANNEL_MAX_DELAY,
                       is_terminal=is_terminal, connect=connect, sleep=sleep)
