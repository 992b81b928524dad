"""
Shared fixtures: an in-memory SQLite database and a fake Klaviyo API served
through httpx.MockTransport.
"""

import os
import re

os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("METRIC_REFRESH_INTERVAL_SECONDS", "0")

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.database import Base
from app.klaviyo_client import KlaviyoClient
import app.models  # noqa: F401

BASE_URL = "https://a.klaviyo.com/api"
FILTER_RE = re.compile(r'equals\((\w+),"([^"]*)"\)')


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


class FakeKlaviyo:
    """
    Just enough of the Klaviyo REST API for the services: accounts, metrics,
    events and profiles, keyed by the private key in the Authorization header.
    Cursors are plain offsets.
    """

    def __init__(self):
        self.accounts: dict[str, dict] = {}
        self.metrics: dict[str, list[dict]] = {}
        self.events: dict[str, list[dict]] = {}
        self.profiles: dict[str, list[dict]] = {}
        self.failing_metrics: dict[str, int] = {}
        self.failing_keys: dict[str, int] = {}
        self.metrics_page_size = 50
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self.handle)

    # ── Seeding ───────────────────────────────────────────────────────

    def add_account(self, private_key: str, public_key: str, organization: str = "Test Org"):
        self.accounts[private_key] = {"public_key": public_key, "organization": organization}

    def add_metric(self, private_key: str, metric_id: str, name: str):
        self.metrics.setdefault(private_key, []).append({"id": metric_id, "name": name})

    def add_event(self, private_key: str, profile_id: str, metric_id: str, timestamp: str, **properties):
        events = self.events.setdefault(private_key, [])
        events.append({
            "type": "event",
            "id": f"evt_{len(events) + 1}",
            "attributes": {"datetime": timestamp, "event_properties": properties},
            "relationships": {
                "metric": {"data": {"type": "metric", "id": metric_id}},
                "profile": {"data": {"type": "profile", "id": profile_id}},
            },
        })

    def add_profile(self, private_key: str, email: str, profile_id: str = None):
        profiles = self.profiles.setdefault(private_key, [])
        profiles.append({
            "type": "profile",
            "id": profile_id or f"{private_key}_p{len(profiles) + 1}",
            "attributes": {"email": email},
        })

    def client_factory(self, private_key: str) -> KlaviyoClient:
        return KlaviyoClient(private_key, BASE_URL, "2025-04-15", timeout=5, transport=self.transport)

    def requests_for(self, resource: str, private_key: str = None) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.url.path.endswith(f"/{resource}")
            and (private_key is None or r.headers["Authorization"] == f"Klaviyo-API-Key {private_key}")
        ]

    # ── Transport ─────────────────────────────────────────────────────

    @staticmethod
    def _error(status: int, detail: str) -> httpx.Response:
        return httpx.Response(status, json={"errors": [{"status": status, "detail": detail}]})

    @staticmethod
    def _page(request: httpx.Request, items: list, default_size: int) -> tuple[list, dict]:
        size = int(request.url.params.get("page[size]", default_size))
        offset = int(request.url.params.get("page[cursor]", 0))
        chunk = items[offset:offset + size]
        links = {"next": None}
        if offset + size < len(items):
            links["next"] = str(request.url.copy_set_param("page[cursor]", str(offset + size)))
        return chunk, links

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = request.headers.get("Authorization", "").replace("Klaviyo-API-Key ", "", 1)
        if key in self.failing_keys:
            return self._error(self.failing_keys[key], "Forced failure")

        path = request.url.path
        if "/accounts/" in path:
            return self._account(key, path.rsplit("/", 1)[-1])
        if key not in self.accounts:
            return self._error(401, "Incorrect authentication credentials.")
        if path.endswith("/metrics"):
            chunk, links = self._page(request, self.metrics.get(key, []), self.metrics_page_size)
            data = [{"type": "metric", "id": m["id"], "attributes": {"name": m["name"]}} for m in chunk]
            return httpx.Response(200, json={"data": data, "links": links})
        if path.endswith("/events"):
            return self._events(request, key)
        if path.endswith("/profiles"):
            return self._profiles(request, key)
        return self._error(404, "Not found")

    def _account(self, key: str, public_key: str) -> httpx.Response:
        account = self.accounts.get(key)
        if account is None:
            return self._error(401, "Incorrect authentication credentials.")
        if account["public_key"] != public_key:
            return self._error(404, "Account not found")
        return httpx.Response(200, json={"data": {
            "type": "account",
            "id": public_key,
            "attributes": {"contact_information": {"organization_name": account["organization"]}},
        }})

    def _events(self, request: httpx.Request, key: str) -> httpx.Response:
        filters = dict(FILTER_RE.findall(request.url.params.get("filter", "")))
        metric_id = filters.get("metric_id")
        if metric_id in self.failing_metrics:
            return self._error(self.failing_metrics[metric_id], f"Metric {metric_id} is not valid")

        selected = []
        for e in self.events.get(key, []):
            rel = e["relationships"]
            if "profile_id" in filters and rel["profile"]["data"]["id"] != filters["profile_id"]:
                continue
            if metric_id and rel["metric"]["data"]["id"] != metric_id:
                continue
            selected.append(e)
        if request.url.params.get("sort") == "-datetime":
            selected.sort(key=lambda e: e["attributes"]["datetime"], reverse=True)

        chunk, links = self._page(request, selected, 20)
        names = {m["id"]: m["name"] for m in self.metrics.get(key, [])}
        included = []
        for mid in dict.fromkeys(e["relationships"]["metric"]["data"]["id"] for e in chunk):
            if mid in names:
                included.append({"type": "metric", "id": mid, "attributes": {"name": names[mid]}})
        return httpx.Response(200, json={"data": chunk, "included": included, "links": links})

    def _profiles(self, request: httpx.Request, key: str) -> httpx.Response:
        filters = dict(FILTER_RE.findall(request.url.params.get("filter", "")))
        selected = [
            p for p in self.profiles.get(key, [])
            if "email" not in filters or p["attributes"]["email"] == filters["email"]
        ]
        chunk, links = self._page(request, selected, 20)
        return httpx.Response(200, json={"data": chunk, "links": links, "meta": {"total": len(selected)}})


class StubCredentials:
    """Account id -> private key, without a database."""

    def __init__(self, keys: dict = None, names: dict = None):
        self.keys = dict(keys or {})
        self.names = dict(names or {})

    async def get_private_key(self, account_id=None):
        if not account_id or account_id == "__default__":
            return next(iter(self.keys.values()), None)
        return self.keys.get(account_id)

    async def require_private_key(self, account_id=None):
        from app.services.credential_store import ConfigurationError
        key = await self.get_private_key(account_id)
        if not key:
            raise ConfigurationError()
        return key

    async def get_account(self, account_id):
        if account_id not in self.keys:
            return None
        return {"id": account_id, "publicKey": account_id, "displayName": self.names.get(account_id, account_id)}


@pytest.fixture
def fake_klaviyo():
    return FakeKlaviyo()
