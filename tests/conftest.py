"""Pytest fixtures for Anchor tests."""

import asyncio
import itertools
import re
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)

from anchor.errors import AnchorError, ErrorKind
from anchor.gateway import Filter, Order

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


def _param(value) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if value is None:
        return "null"
    return str(value)


def _like_to_regex(pattern: str) -> re.Pattern:
    out = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\" and i + 1 < len(pattern):
            out.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if ch in "%*":
            # PostgREST accepts * in place of %
            out.append(".*")
        elif ch == "_":
            out.append(".")
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("".join(out), re.IGNORECASE | re.DOTALL)


def _matches(row: dict, f: Filter) -> bool:
    value = row.get(f.column)
    if f.op == "eq":
        return _param(value) == _param(f.value)
    if f.op == "in":
        return _param(value) in {_param(v) for v in f.value}
    if f.op == "ilike":
        return value is not None and bool(_like_to_regex(f.value).fullmatch(str(value)))
    if f.op == "is":
        return value is None if f.value is None else _param(value) == _param(f.value)
    raise ValueError(f"Unsupported filter op {f.op}")


class FakeGateway:
    """In-memory stand-in for RestGateway.

    Evaluates filters, ordering, ranges and ``name(*)`` embeds against plain
    lists of row dicts. Records every call, and can fail or block selected
    calls to exercise retries, rollbacks and races.
    """

    def __init__(self):
        self.tables = {"links": [], "tags": [], "link_tags": [], "spaces": []}
        self.calls: list[tuple[str, str]] = []
        self.access_token = None
        # Enforce the legacy unique_user_normalized_url constraint on insert
        self.unique_urls = False
        self._failures: dict[tuple[str, str], list[AnchorError]] = {}
        self._blockers: dict[tuple[str, str], asyncio.Event] = {}
        self._ids = itertools.count(1)
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    # -- test controls ------------------------------------------------------

    def count(self, method: str, table: str | None = None) -> int:
        return sum(1 for m, t in self.calls if m == method and (table is None or t == table))

    def reset_calls(self) -> None:
        self.calls.clear()

    def fail_next(self, method: str, table: str, error: AnchorError | None = None, times: int = 1) -> None:
        error = error or AnchorError(ErrorKind.NETWORK, f"{method} {table} failed: connection reset")
        self._failures.setdefault((method, table), []).extend([error] * times)

    def block(self, method: str, table: str) -> asyncio.Event:
        """Hold matching calls until the returned event is set."""
        event = asyncio.Event()
        self._blockers[(method, table)] = event
        return event

    def _next_id(self, table: str) -> str:
        return f"{table[:-1]}-{next(self._ids)}"

    def _next_timestamp(self) -> str:
        self._clock += timedelta(seconds=1)
        return self._clock.isoformat()

    def add_space(self, name: str, user_id: str = USER_ID, is_default: bool = False, color: str = "#7cfec4") -> dict:
        row = {
            "id": self._next_id("spaces"), "user_id": user_id, "name": name, "color": color,
            "is_default": is_default, "created_at": self._next_timestamp(), "updated_at": None,
        }
        self.tables["spaces"].append(row)
        return row

    def add_tag(self, name: str, user_id: str = USER_ID, usage_count: int = 0, color: str = "#15afcf") -> dict:
        row = {
            "id": self._next_id("tags"), "user_id": user_id, "name": name, "color": color,
            "usage_count": usage_count, "created_at": self._next_timestamp(),
        }
        self.tables["tags"].append(row)
        return row

    def add_link(
        self,
        url: str,
        user_id: str = USER_ID,
        title: str | None = None,
        note: str | None = None,
        space_id: str | None = None,
        tags: list[dict] | None = None,
    ) -> dict:
        from anchor.urls import extract_domain, normalize_url

        row = {
            "id": self._next_id("links"), "user_id": user_id, "url": url,
            "normalized_url": normalize_url(url), "title": title, "description": None,
            "thumbnail_url": None, "domain": extract_domain(url), "note": note,
            "space_id": space_id, "created_at": self._next_timestamp(), "updated_at": None,
            "opened_at": None,
        }
        self.tables["links"].append(row)
        for tag in tags or []:
            self.tables["link_tags"].append({"link_id": row["id"], "tag_id": tag["id"]})
        return row

    # -- gateway interface --------------------------------------------------

    async def _enter(self, method: str, table: str) -> None:
        self.calls.append((method, table))
        await asyncio.sleep(0)
        event = self._blockers.get((method, table))
        if event is not None:
            await event.wait()
        failures = self._failures.get((method, table))
        if failures:
            raise failures.pop(0)

    def _embed(self, row: dict, columns: str) -> dict:
        if columns == "*":
            return dict(row)
        out = {}
        for part in columns.split(","):
            m = re.fullmatch(r"(\w+)\(\*\)", part.strip())
            if m:
                target = m.group(1)
                key = f"{target[:-1]}_id"
                out[target] = next((dict(r) for r in self.tables[target] if r["id"] == row.get(key)), None)
            else:
                out[part.strip()] = row.get(part.strip())
        return out

    async def select(self, table, columns="*", filters=None, order=None, offset=None, limit=None):
        await self._enter("select", table)
        rows = [r for r in self.tables[table] if all(_matches(r, f) for f in filters or [])]
        for o in reversed(order or []):
            rows.sort(
                key=lambda r: (r.get(o.column) is None, r.get(o.column) if r.get(o.column) is not None else ""),
                reverse=not o.ascending,
            )
        start = offset or 0
        rows = rows[start:start + limit] if limit is not None else rows[start:]
        return [self._embed(r, columns) for r in rows]

    async def insert(self, table, rows):
        await self._enter("insert", table)
        rows = [rows] if isinstance(rows, dict) else rows
        stored = []
        for row in rows:
            row = dict(row)
            if table == "links" and self.unique_urls and any(
                r["user_id"] == row["user_id"] and r["normalized_url"] == row["normalized_url"]
                for r in self.tables["links"]
            ):
                raise AnchorError(
                    ErrorKind.CONFLICT,
                    'duplicate key value violates unique constraint "unique_user_normalized_url"',
                    "23505",
                )
            if table != "link_tags":
                row.setdefault("id", self._next_id(table))
                row.setdefault("created_at", self._next_timestamp())
            if table == "tags":
                row.setdefault("usage_count", 0)
            self.tables[table].append(row)
            stored.append(dict(row))
        return stored

    async def update(self, table, values, filters):
        await self._enter("update", table)
        updated = []
        for row in self.tables[table]:
            if all(_matches(row, f) for f in filters):
                row.update(values)
                updated.append(dict(row))
        return updated

    async def delete(self, table, filters):
        await self._enter("delete", table)
        kept, removed = [], []
        for row in self.tables[table]:
            (removed if all(_matches(row, f) for f in filters) else kept).append(row)
        self.tables[table] = kept
        if table == "links":
            # link_tags.link_id is ON DELETE CASCADE
            gone = {r["id"] for r in removed}
            self.tables["link_tags"] = [r for r in self.tables["link_tags"] if r["link_id"] not in gone]
        if table == "spaces":
            gone = {r["id"] for r in removed}
            for link in self.tables["links"]:
                if link["space_id"] in gone:
                    link["space_id"] = None
        return removed


@pytest.fixture
def gw():
    """Empty in-memory gateway."""
    return FakeGateway()


@pytest.fixture
def seeded_gw():
    """Gateway with default spaces, a few tags and five links for USER_ID."""
    gw = FakeGateway()
    unread = gw.add_space("Unread", is_default=True, color="#9333EA")
    reference = gw.add_space("Reference", is_default=True, color="#DC2626")
    gw.add_space("Recipes", color="#1ac47f")
    python = gw.add_tag("python", usage_count=3)
    news = gw.add_tag("news", usage_count=1)

    gw.add_link("https://docs.python.org/3/library/asyncio.html", title="asyncio docs",
                space_id=reference["id"], tags=[python])
    gw.add_link("https://news.ycombinator.com/", title="Hacker News", tags=[news])
    gw.add_link("https://example.com/article", title="An article", note="read later",
                space_id=unread["id"])
    gw.add_link("https://realpython.com/async-io-python/", title="Async IO in Python",
                space_id=unread["id"], tags=[python, news])
    gw.add_link("https://www.bbc.co.uk/news", title="BBC", note="morning headlines")
    # Another user's data must never leak into USER_ID's views
    gw.add_link("https://secret.example.org/", user_id=OTHER_USER_ID, title="Not yours")
    gw.reset_calls()
    return gw


@pytest.fixture
def bulk_gw():
    """Gateway with 65 untagged links, enough for three pages of 30."""
    gw = FakeGateway()
    for i in range(65):
        gw.add_link(f"https://example.com/post/{i}", title=f"Post {i}")
    gw.reset_calls()
    return gw


def space_id_by_name(gw: FakeGateway, name: str) -> str:
    return next(r["id"] for r in gw.tables["spaces"] if r["name"] == name)
