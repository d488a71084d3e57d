"""
Pytest configuration and shared fixtures for the license client tests.
"""

import asyncio
import inspect
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

from urcash_license.config import Settings
from urcash_license.database import create_session_factory
from urcash_license.license_api import LicenseServerClient
from urcash_license.license_cache import LicenseCache


API_URL = "http://license.test/api"

PREMIUM_PAYLOAD = {
    "success": True,
    "device_id": "DEVICE-1",
    "type": "premium",
    "features": ["reports", "debts"],
    "activated_at": "2025-01-01T00:00:00Z",
    "expires_at": "2099-01-01",
    "signature": "sig",
}


class FakeClock:
    """Controllable clock for cache TTLs and expiry checks."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2025, 6, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeLicenseServer:
    """
    In-process stand-in for the remote license server, served through
    httpx.MockTransport.

    Each route maps "METHOD /path" to either a JSON dict (HTTP 200), a
    (status, body) tuple, an exception instance to raise, or a callable
    taking the request (sync or async). Setting ``gate`` holds every
    response until the event is set.
    """

    def __init__(self):
        self.routes: Dict[str, Any] = {}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.gate: Optional[asyncio.Event] = None

    def route(self, method: str, path: str, response: Any) -> None:
        self.routes[f"{method} /api{path}"] = response

    def count(self, method: str, path: str) -> int:
        key = f"{method} /api{path}"
        return sum(1 for call, _ in self.calls if call == key)

    def bodies(self, method: str, path: str) -> List[Dict[str, Any]]:
        key = f"{method} /api{path}"
        return [body for call, body in self.calls if call == key]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        key = f"{request.method} {request.url.path}"
        body = json.loads(request.content) if request.content else {}
        self.calls.append((key, body))

        if self.gate is not None:
            await self.gate.wait()

        response = self.routes.get(key)
        if response is None:
            return httpx.Response(404, json={"success": False, "message": "Not found"})
        if callable(response):
            response = response(request)
            if inspect.isawaitable(response):
                response = await response
        if isinstance(response, Exception):
            raise response
        if isinstance(response, tuple):
            status, payload = response
            return httpx.Response(status, json=payload)
        return httpx.Response(200, json=response)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def held(response: Any):
    """
    Route response that is only sent once the returned event is set.
    """
    release = asyncio.Event()

    async def respond(request: httpx.Request) -> Any:
        await release.wait()
        return response

    return respond, release


async def until_called(server: FakeLicenseServer, method: str, path: str, times: int = 1) -> None:
    for _ in range(100):
        if server.count(method, path) >= times:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"{method} {path} was not called {times} time(s)")


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        LICENSE_API_URL=API_URL,
        DATABASE_URL="sqlite://",
        ACTIVATION_GRACE_SECONDS=1.0,
        GEOLOCATION_URL="",
    )


@pytest.fixture
def session_factory():
    return create_session_factory("sqlite://")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def server() -> FakeLicenseServer:
    return FakeLicenseServer()


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def cache(session_factory, clock) -> LicenseCache:
    return LicenseCache(session_factory, ttl=timedelta(minutes=30), clock=clock)


@pytest.fixture
def api(settings, server) -> LicenseServerClient:
    return LicenseServerClient(settings, "DEVICE-1", "INSTALL-1", transport=server.transport)
