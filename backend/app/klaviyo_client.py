"""
Klaviyo API Client
Thin async wrapper over the Klaviyo REST API (accounts, metrics, events, profiles).
Every call carries the private key, the API revision and a bounded timeout;
failures are raised as UpstreamError subclasses that keep the upstream status.
"""

import logging
from typing import Any, Optional
from urllib.parse import urlparse, parse_qs
import httpx
from app.config import get_settings

logger = logging.getLogger(__name__)

CURSOR_PARAMS = ("page[cursor]", "page_cursor")


class UpstreamError(Exception):
    """Klaviyo responded with an error, or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class UpstreamAuthError(UpstreamError):
    """401/403: the key is invalid or lacks a scope."""


class UpstreamNotFoundError(UpstreamError):
    """404 from Klaviyo."""


class UpstreamTransientError(UpstreamError):
    """5xx, rate limiting, timeouts and network errors. Safe to retry."""


def extract_cursor(next_url: Optional[str]) -> Optional[str]:
    """Pull the page cursor out of a `links.next` / `links.prev` URL."""
    if not next_url:
        return None
    try:
        query = parse_qs(urlparse(next_url).query)
    except ValueError:
        return None
    for name in CURSOR_PARAMS:
        values = query.get(name)
        if values and values[0]:
            return values[0]
    return None


def _error_detail(resp: httpx.Response) -> tuple[str, Any]:
    try:
        payload = resp.json()
    except ValueError:
        return resp.text[:500], None
    errors = payload.get("errors") if isinstance(payload, dict) else None
    if errors and isinstance(errors, list) and isinstance(errors[0], dict):
        return errors[0].get("detail") or errors[0].get("title") or str(errors[0]), payload
    return str(payload)[:500], payload


def error_for_response(resp: httpx.Response) -> UpstreamError:
    """Map a non-2xx Klaviyo response onto the error taxonomy."""
    status = resp.status_code
    detail, payload = _error_detail(resp)
    message = f"Klaviyo API error ({status}): {detail}"
    if status in (401, 403):
        return UpstreamAuthError(message, status, payload)
    if status == 404:
        return UpstreamNotFoundError(message, status, payload)
    if status == 429 or status >= 500:
        return UpstreamTransientError(message, status, payload)
    return UpstreamError(message, status, payload)


class KlaviyoClient:
    """
    One instance per private key. Holds no connection state: each request
    opens a short-lived httpx.AsyncClient.
    """

    def __init__(
        self,
        private_key: str,
        base_url: str,
        revision: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.private_key = private_key
        self.base_url = base_url.rstrip("/")
        self.revision = revision
        self.timeout = timeout
        self.transport = transport

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Klaviyo-API-Key {self.private_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "revision": self.revision,
        }

    async def get(self, path: str, params: Optional[dict[str, Any]] = None) -> dict:
        """GET a Klaviyo resource and return the decoded JSON body."""
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as http:
                resp = await http.get(url, params=params, headers=self.headers)
        except httpx.TimeoutException as e:
            logger.warning(f"Klaviyo GET {path} timed out after {self.timeout}s")
            raise UpstreamTransientError(f"Klaviyo request timed out: {path}") from e
        except httpx.RequestError as e:
            logger.warning(f"Klaviyo GET {path} failed: {e}")
            raise UpstreamTransientError(f"Could not reach Klaviyo: {e}") from e

        if resp.status_code >= 400:
            raise error_for_response(resp)
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamError(
                f"Malformed Klaviyo response for {path}", resp.status_code
            ) from e
        if not isinstance(data, dict):
            raise UpstreamError(f"Malformed Klaviyo response for {path}", resp.status_code)
        return data

    # ── Resources ────────────────────────────────────────────────────

    async def get_account(self, public_key: str) -> dict:
        """Fetch account info; the public key doubles as the account id."""
        return await self.get(f"accounts/{public_key}")

    async def list_metrics(self, max_pages: int = 20) -> list[dict]:
        """Return the full metric catalog as [{id, name}], following cursors."""
        metrics = []
        params: dict[str, Any] = {"fields[metric]": "name"}
        for _ in range(max_pages):
            data = await self.get("metrics", params)
            for m in data.get("data") or []:
                name = (m.get("attributes") or {}).get("name")
                if m.get("id") and name is not None:
                    metrics.append({"id": m["id"], "name": name})
            cursor = extract_cursor((data.get("links") or {}).get("next"))
            if not cursor:
                break
            params = {"fields[metric]": "name", "page[cursor]": cursor}
        return metrics

    async def get_events_page(self, params: dict[str, Any]) -> dict:
        return await self.get("events", params)

    async def get_profiles_page(self, params: dict[str, Any]) -> dict:
        return await self.get("profiles", params)


def create_klaviyo_client(private_key: str) -> KlaviyoClient:
    """Factory that applies the configured base URL, revision and timeout."""
    settings = get_settings()
    return KlaviyoClient(
        private_key=private_key,
        base_url=settings.klaviyo_base_url,
        revision=settings.klaviyo_revision,
        timeout=settings.klaviyo_timeout_seconds,
    )
