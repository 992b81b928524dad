"""
Profile Service — paged profile browsing across one or many Klaviyo accounts.

ProfilePager fetches one page from one account. MultiAccountMerger fans a
page request out to every selected account in parallel, merges the results
by email and keeps one opaque Klaviyo cursor per account. ProfileNavigator
holds the forward cursor set and a stack of earlier cursor sets so that
"previous page" reproduces exactly what was shown before; its state
round-trips through a single URL-safe token for the HTTP API.
"""

import asyncio
import base64
import binascii
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence
from app.klaviyo_client import KlaviyoClient, create_klaviyo_client, extract_cursor

logger = logging.getLogger(__name__)

MIN_PER_ACCOUNT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
PROFILE_ADDITIONAL_FIELDS = "subscriptions,predictive_analytics"

CursorSet = dict[str, Optional[str]]


class MergeFailure(Exception):
    """At least one account failed during a multi-account fetch."""

    def __init__(self, errors: dict[str, Exception]):
        self.errors = errors
        first = next(iter(errors.values()))
        self.status_code = getattr(first, "status_code", None)
        summary = "; ".join(f"{aid}: {err}" for aid, err in errors.items())
        super().__init__(f"Failed to fetch profiles for {len(errors)} account(s): {summary}")


class InvalidCursorError(ValueError):
    """A page token is malformed or belongs to a different query."""


@dataclass
class ProfilePage:
    profiles: list[dict] = field(default_factory=list)
    next_cursor: Optional[str] = None
    prev_cursor: Optional[str] = None
    total: Optional[int] = None


@dataclass
class MergedPage:
    profiles: list[dict] = field(default_factory=list)
    next_cursor_set: CursorSet = field(default_factory=dict)
    total: Optional[int] = None
    totals: dict[str, Optional[int]] = field(default_factory=dict)
    has_next: bool = False
    errors: dict[str, str] = field(default_factory=dict)


def profile_email(profile: dict) -> str:
    return ((profile.get("attributes") or {}).get("email") or "").lower()


def per_account_page_size(page_size: int, account_count: int) -> int:
    if account_count <= 1:
        return page_size
    return min(MAX_PAGE_SIZE, max(MIN_PER_ACCOUNT_PAGE_SIZE, page_size // account_count))


class ProfilePager:
    def __init__(self, credentials, client_factory: Callable[[str], KlaviyoClient] = create_klaviyo_client):
        self.credentials = credentials
        self.client_factory = client_factory

    async def fetch_page(
        self,
        account_id: Optional[str],
        page_size: int = 25,
        cursor: Optional[str] = None,
        search_email: Optional[str] = None,
    ) -> ProfilePage:
        private_key = await self.credentials.require_private_key(account_id)
        client = self.client_factory(private_key)

        params: dict[str, Any] = {
            "additional-fields[profile]": PROFILE_ADDITIONAL_FIELDS,
            "page[size]": page_size,
        }
        if cursor:
            params["page[cursor]"] = cursor
        if search_email:
            params["filter"] = f'equals(email,"{search_email}")'

        data = await client.get_profiles_page(params)
        links = data.get("links") or {}
        page = ProfilePage(
            profiles=data.get("data") or [],
            next_cursor=extract_cursor(links.get("next")),
            prev_cursor=extract_cursor(links.get("prev")),
            total=(data.get("meta") or {}).get("total"),
        )
        logger.info(f"Fetched {len(page.profiles)} profiles for account {account_id} "
                    f"(next cursor: {'yes' if page.next_cursor else 'no'})")
        return page


class MultiAccountMerger:
    def __init__(self, pager: ProfilePager, credentials):
        self.pager = pager
        self.credentials = credentials

    async def _account_names(self, account_ids: Sequence[str]) -> dict[str, str]:
        names = {}
        for aid in account_ids:
            account = await self.credentials.get_account(aid)
            names[aid] = account["displayName"] if account else aid
        return names

    async def fetch_merged_page(
        self,
        account_ids: Sequence[str],
        page_size: int = 25,
        cursor_set: Optional[CursorSet] = None,
        search_email: Optional[str] = None,
        allow_partial: bool = False,
        known_totals: Optional[dict[str, Optional[int]]] = None,
    ) -> MergedPage:
        """
        One merged page across accounts. With a cursor set, accounts whose
        cursor is exhausted (None) are not queried again; their totals come
        from `known_totals`, so `total` stays the same on every page.
        """
        account_ids = list(dict.fromkeys(account_ids))
        if not account_ids:
            raise ValueError("At least one account must be selected")

        size = per_account_page_size(page_size, len(account_ids))
        if cursor_set is None:
            active = account_ids
        else:
            active = [aid for aid in account_ids if cursor_set.get(aid)]

        results = await asyncio.gather(
            *(
                self.pager.fetch_page(
                    aid,
                    page_size=size,
                    cursor=cursor_set.get(aid) if cursor_set else None,
                    search_email=search_email,
                )
                for aid in active
            ),
            return_exceptions=True,
        )

        pages: dict[str, ProfilePage] = {}
        errors: dict[str, Exception] = {}
        for aid, result in zip(active, results):
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
            if isinstance(result, Exception):
                logger.warning(f"Profile fetch failed for account {aid}: {result}")
                errors[aid] = result
            else:
                pages[aid] = result

        if errors and not allow_partial:
            raise MergeFailure(errors)

        names = await self._account_names(account_ids)
        merged = []
        for aid, page in pages.items():
            for profile in page.profiles:
                merged.append({**profile, "accountId": aid, "accountName": names[aid]})
        merged.sort(key=profile_email)

        totals = {aid: (known_totals or {}).get(aid) for aid in account_ids}
        for aid, page in pages.items():
            if page.total is not None:
                totals[aid] = page.total
        known = [t for t in totals.values() if t is not None]
        next_cursor_set = {aid: (pages[aid].next_cursor if aid in pages else None) for aid in account_ids}
        return MergedPage(
            profiles=merged,
            next_cursor_set=next_cursor_set,
            total=sum(known) if known else None,
            totals=totals,
            has_next=any(next_cursor_set.values()),
            errors={aid: str(err) for aid, err in errors.items()},
        )


def query_fingerprint(account_ids: Sequence[str], page_size: int, search_email: Optional[str]) -> str:
    raw = json.dumps([list(dict.fromkeys(account_ids)), page_size, search_email or ""])
    return hashlib.sha256(raw.encode()).hexdigest()[:16]


class ProfileNavigator:
    """
    Forward/back paging for one fixed query. `cursor_set` is the cursor set
    that produced the current page (None for the first page); `history`
    holds the cursor sets of the pages before it. `totals` keeps each
    account's last reported total for accounts that are no longer queried.
    """

    def __init__(
        self,
        merger: MultiAccountMerger,
        account_ids: Sequence[str],
        page_size: int = 25,
        search_email: Optional[str] = None,
        cursor_set: Optional[CursorSet] = None,
        history: Optional[list[Optional[CursorSet]]] = None,
        allow_partial: bool = False,
        totals: Optional[dict[str, Optional[int]]] = None,
    ):
        self.merger = merger
        self.account_ids = list(dict.fromkeys(account_ids))
        self.page_size = page_size
        self.search_email = search_email
        self.cursor_set = cursor_set
        self.history = list(history or [])
        self.allow_partial = allow_partial
        self.totals = dict(totals or {})
        self.page: Optional[MergedPage] = None

    @property
    def fingerprint(self) -> str:
        return query_fingerprint(self.account_ids, self.page_size, self.search_email)

    @property
    def has_prev(self) -> bool:
        return bool(self.history)

    @property
    def has_next(self) -> bool:
        return bool(self.page and self.page.has_next)

    async def load(self) -> MergedPage:
        self.page = await self.merger.fetch_merged_page(
            self.account_ids,
            page_size=self.page_size,
            cursor_set=self.cursor_set,
            search_email=self.search_email,
            allow_partial=self.allow_partial,
            known_totals=self.totals,
        )
        self.totals = dict(self.page.totals)
        return self.page

    async def go_to_next_page(self) -> Optional[MergedPage]:
        if not self.has_next:
            return self.page
        self.history.append(self.cursor_set)
        self.cursor_set = dict(self.page.next_cursor_set)
        return await self.load()

    async def go_to_prev_page(self) -> Optional[MergedPage]:
        if not self.history:
            return self.page
        self.cursor_set = self.history.pop()
        return await self.load()

    async def reset(self) -> MergedPage:
        self.cursor_set = None
        self.history = []
        self.totals = {}
        return await self.load()

    # ── Token round-trip ──────────────────────────────────────────────

    def _encode(self, cursor_set: Optional[CursorSet], history: list) -> str:
        payload = json.dumps(
            {"q": self.fingerprint, "c": cursor_set, "h": history, "t": self.totals}, separators=(",", ":"))
        return base64.urlsafe_b64encode(payload.encode()).decode().rstrip("=")

    def next_token(self) -> Optional[str]:
        if not self.has_next:
            return None
        return self._encode(self.page.next_cursor_set, self.history + [self.cursor_set])

    def prev_token(self) -> Optional[str]:
        if not self.history:
            return None
        return self._encode(self.history[-1], self.history[:-1])

    def restore(self, token: Optional[str]) -> None:
        """Position the navigator at the page a token points to."""
        if not token:
            self.cursor_set, self.history, self.totals = None, [], {}
            return
        try:
            padded = token + "=" * (-len(token) % 4)
            payload = json.loads(base64.urlsafe_b64decode(padded.encode()))
        except (binascii.Error, ValueError) as e:
            raise InvalidCursorError("Malformed page cursor") from e
        if not isinstance(payload, dict) or payload.get("q") != self.fingerprint:
            raise InvalidCursorError("Page cursor does not belong to this query; restart from the first page")
        cursor_set, history, totals = payload.get("c"), payload.get("h"), payload.get("t") or {}
        if (cursor_set is not None and not isinstance(cursor_set, dict)) or not isinstance(history, list) \
                or not isinstance(totals, dict):
            raise InvalidCursorError("Malformed page cursor")
        self.cursor_set, self.history, self.totals = cursor_set, history, totals
