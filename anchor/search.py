"""Debounced, filtered view over a LinkStore."""

import asyncio
import logging
from typing import Callable, Iterable, Optional

from .models import LinkWithTags
from .observable import Observable

logger = logging.getLogger("anchor")


class Debouncer:
    """Runs a callback once input has been quiet for ``delay`` seconds."""

    def __init__(self, delay: float, callback: Callable[[], None]):
        self.delay = delay
        self.callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self) -> None:
        """Restart the timer. Must be called from the running event loop."""
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self.callback()


def link_matches(record: LinkWithTags, query: str) -> bool:
    """Check a lowercased, trimmed query against title, note, domain and tag names."""
    link = record.link
    for text in (link.title, link.note, link.domain):
        if text and query in text.lower():
            return True
    return any(query in name.lower() for name in record.tag_names)


def filter_links(records: Iterable[LinkWithTags], query: Optional[str]) -> list[LinkWithTags]:
    """
    Filter records by a free-text query.

    An empty or whitespace-only query returns every record, in order.
    """
    query = (query or "").strip().lower()
    if not query:
        return list(records)
    return [r for r in records if link_matches(r, query)]


class LinkSearch(Observable):
    """Filtered results of one store, republished when the query or the store changes."""

    def __init__(self, store: Observable, delay: float = 0.3):
        """
        Initialize the search.

        Args:
            store: LinkStore to filter
            delay: Seconds of quiet before a typed query is applied
        """
        super().__init__()
        self.store = store
        self._query = ""
        self._pending_query = ""
        self._debouncer = Debouncer(delay, self.flush)
        self._unsubscribe_store = store.subscribe(self._on_store_change)

    @property
    def query(self) -> str:
        """The query currently applied to the results."""
        return self._query

    @property
    def pending_query(self) -> str:
        """The most recently typed query, applied once the debounce fires."""
        return self._pending_query

    @property
    def results(self) -> list[LinkWithTags]:
        return filter_links(self.store.snapshot, self._query)

    def set_query(self, text: str) -> None:
        """Record typed input; results update after the debounce delay."""
        self._pending_query = text or ""
        self._debouncer.trigger()

    def flush(self) -> None:
        """Apply the pending query now."""
        self._debouncer.cancel()
        if self._pending_query == self._query:
            return
        self._query = self._pending_query
        results = self.results
        logger.debug(f"Search {self._query!r}: {len(results)} matches")
        self._publish(results)

    def _on_store_change(self, snapshot: list[LinkWithTags]) -> None:
        self._publish(filter_links(snapshot, self._query))

    def dispose(self) -> None:
        self._debouncer.cancel()
        self._unsubscribe_store()
        super().dispose()
