"""
Pytest config.

The API modules live flat under `api/` and import each other by bare name
(`from errors import ...`), the same way uvicorn loads them with `api/` as the
working directory. Put that directory on sys.path so tests can import them.
"""

from __future__ import annotations

import os
import sys
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest


def _ensure_api_dir_on_syspath() -> None:
    api_dir = str(Path(__file__).resolve().parents[1] / "api")
    if api_dir not in sys.path:
        sys.path.insert(0, api_dir)


_ensure_api_dir_on_syspath()

# main.py validates the environment at import time
os.environ.setdefault("OS_AUTH_URL", "https://keystone.test/v3")

from keystone_session import SessionManager  # noqa: E402
from openstack_client import OpenStackClient  # noqa: E402
from provisioning import ProvisioningService  # noqa: E402
from settings import ConsoleSettings  # noqa: E402

AUTH_URL = "https://keystone.test/v3"
TOKEN_URL = f"{AUTH_URL}/auth/tokens"
NEUTRON = "https://neutron.test/v2.0"
GLANCE = "https://glance.test/v2"
NOVA = "https://nova.test/v2.1/p-123"

NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)

CATALOG = [
    {"type": "identity", "endpoints": [{"interface": "public", "url": AUTH_URL}]},
    {"type": "network", "endpoints": [
        {"interface": "internal", "url": "http://neutron.internal:9696"},
        {"interface": "public", "url": "https://neutron.test/"},
    ]},
    {"type": "image", "endpoints": [{"interface": "public", "url": "https://glance.test"}]},
    {"type": "compute", "endpoints": [{"interface": "public", "url": NOVA}]},
]


class FakeResponse:
    def __init__(self, status_code: int = 200, json: Any = None, headers: Optional[Dict[str, str]] = None,
                 text: Optional[str] = None) -> None:
        self.status_code = status_code
        self._json = json
        self.headers = headers or {}
        if text is not None:
            self.text = text
        elif json is not None:
            self.text = repr(json)
        else:
            self.text = ""
        self.content = self.text.encode("utf-8")

    def json(self) -> Any:
        if self._json is None:
            raise ValueError("no json body")
        return self._json


Handler = Callable[..., FakeResponse]


class FakeHttp:
    """Stands in for requests.Session; routes by (method, url) and records calls."""

    def __init__(self) -> None:
        self.verify = True
        self.routes: Dict[Tuple[str, str], Any] = {}
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def add(self, method: str, url: str, response: Any) -> None:
        self.routes[(method.upper(), url)] = response

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        with self._lock:
            self.calls.append({"method": method.upper(), "url": url, **kwargs})
        route = self.routes.get((method.upper(), url))
        if route is None:
            return FakeResponse(404, {"NotFound": {"message": f"no fake route for {method} {url}"}})
        if isinstance(route, BaseException):
            raise route
        if callable(route):
            return route(**kwargs)
        return route

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self.request("POST", url, **kwargs)

    def calls_to(self, method: str, url: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["method"] == method.upper() and c["url"] == url]


def keystone_response(token: str = "gAAAAA-token-1", expires_at: Optional[datetime] = None,
                      catalog: Optional[List[Dict[str, Any]]] = None) -> FakeResponse:
    expires_at = expires_at or NOW + timedelta(hours=1)
    return FakeResponse(
        201,
        {
            "token": {
                "expires_at": expires_at.strftime("%Y-%m-%dT%H:%M:%S.000000Z"),
                "catalog": CATALOG if catalog is None else catalog,
                "user": {"id": "u-1", "name": "demo"},
                "project": {"id": "p-123", "name": "NT533.P21"},
            }
        },
        headers={"X-Subject-Token": token},
    )


def slow(response: FakeResponse, delay: float = 0.05) -> Handler:
    def _handler(**_kwargs: Any) -> FakeResponse:
        time.sleep(delay)
        return response
    return _handler


class Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def settings() -> ConsoleSettings:
    return ConsoleSettings(
        auth_url=AUTH_URL,
        username="demo",
        password="secret",
        project_name="NT533.P21",
        server_cloud_config="#cloud-config\nssh_pwauth: True\n",
    )


@pytest.fixture
def http() -> FakeHttp:
    fake = FakeHttp()
    fake.add("POST", TOKEN_URL, keystone_response())
    return fake


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def sessions(settings: ConsoleSettings, http: FakeHttp, clock: Clock) -> SessionManager:
    return SessionManager(settings, http=http, clock=clock)


@pytest.fixture
def client(sessions: SessionManager, http: FakeHttp) -> OpenStackClient:
    return OpenStackClient(sessions, http=http)


@pytest.fixture
def service(client: OpenStackClient) -> ProvisioningService:
    return ProvisioningService(client)
