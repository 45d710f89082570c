"""REST gateway for the hosted Postgres tables.

Speaks the auto-generated PostgREST interface:

    GET    /rest/v1/links?select=*&user_id=eq.<id>&order=created_at.desc&offset=0&limit=30
    POST   /rest/v1/links            (Prefer: return=representation)
    PATCH  /rest/v1/links?id=eq.<id> (Prefer: return=representation)
    DELETE /rest/v1/links?id=eq.<id>

Row-level access is enforced by the server from the bearer token; the
gateway only adds the filters the caller asks for.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .errors import AnchorError, ErrorKind, classify_response

logger = logging.getLogger("anchor")


@dataclass(frozen=True)
class Filter:
    """A single PostgREST column filter."""

    column: str
    op: str  # eq, in, ilike, is
    value: Any

    def to_param(self) -> tuple[str, str]:
        if self.op == "in":
            values = ",".join(f'"{v}"' if "," in str(v) else str(v) for v in self.value)
            return self.column, f"in.({values})"
        if self.op == "is":
            return self.column, f"is.{'null' if self.value is None else str(self.value).lower()}"
        return self.column, f"{self.op}.{self.value}"


def eq(column: str, value: Any) -> Filter:
    if isinstance(value, bool):
        value = str(value).lower()
    return Filter(column, "eq", value)


def in_(column: str, values: list) -> Filter:
    return Filter(column, "in", list(values))


def ilike(column: str, pattern: str) -> Filter:
    return Filter(column, "ilike", pattern)


def is_null(column: str) -> Filter:
    return Filter(column, "is", None)


def escape_like(text: str) -> str:
    """Escape LIKE wildcards so ilike() matches the text literally."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_").replace("*", "\\*")


@dataclass(frozen=True)
class Order:
    """Sort key for a select."""

    column: str
    ascending: bool = True

    def to_param(self) -> str:
        return f"{self.column}.{'asc' if self.ascending else 'desc'}"


@dataclass
class RetryPolicy:
    """Timeout and retry settings shared by every request."""

    attempts: int = 2
    delay: float = 0.5  # seconds between attempts
    timeout: float = 10.0  # seconds per attempt


class RestGateway:
    """Async client for the hosted database's REST interface."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        access_token: str | None = None,
        retry: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the gateway.

        Args:
            base_url: Project URL (e.g., https://xyz.supabase.co)
            api_key: Public (anon) API key
            access_token: Signed-in user's JWT; falls back to the API key
            retry: Timeout and retry policy
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.access_token = access_token
        self.retry = retry or RetryPolicy()
        self._transport = transport

    def _headers(self, write: bool = False) -> dict[str, str]:
        """Build request headers with auth."""
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.access_token or self.api_key}",
            "Content-Type": "application/json",
        }
        if write:
            headers["Prefer"] = "return=representation"
        return headers

    def _url(self, table: str) -> str:
        return f"{self.base_url}/rest/v1/{table}"

    async def _request(
        self,
        method: str,
        table: str,
        params: list[tuple[str, str]],
        payload: Any = None,
    ) -> list[dict]:
        """
        Send one request with the retry policy applied.

        Network failures (timeouts, connection errors, 5xx, 429) are retried
        up to ``retry.attempts`` times; every other failure is raised at once.
        """
        write = method != "GET"
        last_error: AnchorError | None = None

        for attempt in range(1, self.retry.attempts + 1):
            try:
                async with httpx.AsyncClient(timeout=self.retry.timeout, transport=self._transport) as client:
                    response = await client.request(
                        method,
                        self._url(table),
                        params=params,
                        headers=self._headers(write),
                        json=payload,
                    )

                if response.is_success:
                    if not response.content:
                        return []
                    data = response.json()
                    return data if isinstance(data, list) else [data]

                try:
                    body = response.json()
                except ValueError:
                    body = None
                error = classify_response(response.status_code, body if isinstance(body, dict) else None)

            except httpx.TimeoutException:
                error = AnchorError(ErrorKind.NETWORK, f"{method} {table} timed out")
            except httpx.TransportError as e:
                error = AnchorError(ErrorKind.NETWORK, f"{method} {table} failed: {e}")

            if not error.retryable:
                raise error

            last_error = error
            logger.warning(f"{method} {table} failed (attempt {attempt}/{self.retry.attempts}): {error.message}")
            if attempt < self.retry.attempts:
                await asyncio.sleep(self.retry.delay)

        raise last_error

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: list[Filter] | None = None,
        order: list[Order] | None = None,
        offset: int | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        """
        Select rows.

        Args:
            table: Table name
            columns: PostgREST select expression, may embed (e.g. "link_id,tags(*)")
            filters: Column filters (ANDed)
            order: Sort keys, applied in order
            offset: Rows to skip
            limit: Max rows to return

        Returns:
            List of row dicts
        """
        params = [("select", columns)]
        params += [f.to_param() for f in filters or []]
        if order:
            params.append(("order", ",".join(o.to_param() for o in order)))
        if offset is not None:
            params.append(("offset", str(offset)))
        if limit is not None:
            params.append(("limit", str(limit)))
        return await self._request("GET", table, params)

    async def insert(self, table: str, rows: dict | list[dict]) -> list[dict]:
        """Insert one or more rows and return them as stored."""
        return await self._request("POST", table, [("select", "*")], rows)

    async def update(self, table: str, values: dict, filters: list[Filter]) -> list[dict]:
        """Update rows matching the filters and return them as stored."""
        if not filters:
            raise ValueError("update() requires at least one filter")
        return await self._request("PATCH", table, [f.to_param() for f in filters], values)

    async def delete(self, table: str, filters: list[Filter]) -> list[dict]:
        """Delete rows matching the filters and return them."""
        if not filters:
            raise ValueError("delete() requires at least one filter")
        return await self._request("DELETE", table, [f.to_param() for f in filters])
