# FILE: conftest.py  # shared fakes for channel, lifecycle and location-share tests

import asyncio
import json
from typing import List

import httpx
import pytest

import main
from config import SANDBOX_AGENCY_EMAIL, SANDBOX_AGENCY_PASSWORD
from session import MemoryCredentialStore, Session
from transport import ApiClient


class FakeSocket:
    """Yields scripted frames, then either ends (server closed) or stays open until closed."""

    def __init__(self, frames=(), hold: bool = True):
        self.frames = [f if isinstance(f, str) else json.dumps(f) for f in frames]
        self.hold = hold
        self.closed = False
        self._closed = None

    async def __aenter__(self):
        self._closed = asyncio.Event()
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        for frame in self.frames:
            yield frame
            await asyncio.sleep(0)
        if self.hold:
            await self._closed.wait()

    async def close(self):
        self.closed = True
        if self._closed is not None:
            self._closed.set()


class FailedConnect:  # async context manager that refuses to open
    def __init__(self, exc: Exception):
        self.exc = exc

    async def __aenter__(self):
        raise self.exc

    async def __aexit__(self, *exc):
        return False


class FakeConnector:
    """Stands in for ``websockets.connect``: plays back one outcome per attempt.

    Outcomes are ``FakeSocket`` instances or exceptions. Once the script runs
    out every attempt gets an idle socket that stays open.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.urls: List[str] = []
        self.sockets: List[FakeSocket] = []

    def __call__(self, url: str):
        self.urls.append(url)
        outcome = self.outcomes.pop(0) if self.outcomes else FakeSocket()
        if isinstance(outcome, Exception):
            return FailedConnect(outcome)
        self.sockets.append(outcome)
        return outcome


class RecordingSleep:  # records backoff delays without waiting
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.001)
    await asyncio.wait_for(poll(), timeout)


def sandbox_api() -> ApiClient:  # client wired to the in-process sandbox app
    session = Session(MemoryCredentialStore())
    return ApiClient(session, base_url="http://sandbox", transport=httpx.ASGITransport(app=main.app))


def sandbox_driver() -> httpx.AsyncClient:  # driver/ops side of the sandbox
    return httpx.AsyncClient(base_url="http://sandbox", transport=httpx.ASGITransport(app=main.app))


async def sandbox_login(api: ApiClient) -> None:
    await api.login(SANDBOX_AGENCY_EMAIL, SANDBOX_AGENCY_PASSWORD)


@pytest.fixture
def sandbox():  # fresh in-memory backend state
    main.store.reset()
    yield main.store
