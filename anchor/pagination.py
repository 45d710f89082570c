"""Pagination cursor for infinite-scroll link lists.

State machine:

    IDLE ──first read/refresh──▶ LOADING_INITIAL ──full page──▶ IDLE
                                       │
                                       └──short page──▶ EXHAUSTED
    IDLE ──load_next_page──▶ LOADING_MORE ──full page──▶ IDLE
                                       └──short page──▶ EXHAUSTED

``refresh`` moves any state back to LOADING_INITIAL.
"""

from enum import Enum


class CursorState(Enum):
    IDLE = "idle"
    LOADING_INITIAL = "loading_initial"
    LOADING_MORE = "loading_more"
    EXHAUSTED = "exhausted"


class PaginationCursor:
    """Tracks page number, page size and the end-of-data sentinel."""

    def __init__(self, page_size: int = 30):
        self.page_size = page_size
        self.page = 0
        self.state = CursorState.IDLE
        self.loaded_once = False
        # Bumped on every restart so late pages from before a refresh are dropped
        self.generation = 0

    @property
    def offset(self) -> int:
        return self.page * self.page_size

    @property
    def is_loading(self) -> bool:
        return self.state in (CursorState.LOADING_INITIAL, CursorState.LOADING_MORE)

    @property
    def has_more(self) -> bool:
        return self.state is not CursorState.EXHAUSTED

    def begin_initial(self) -> int:
        """Reset to page zero and enter LOADING_INITIAL. Returns the generation."""
        self.page = 0
        self.generation += 1
        self.state = CursorState.LOADING_INITIAL
        return self.generation

    def can_load_more(self) -> bool:
        return self.state is CursorState.IDLE and self.loaded_once

    def begin_more(self) -> int:
        """Advance to the next page and enter LOADING_MORE. Returns the generation."""
        if not self.can_load_more():
            raise RuntimeError(f"Cannot load more from state {self.state.value}")
        self.page += 1
        self.state = CursorState.LOADING_MORE
        return self.generation

    def finish(self, count: int) -> None:
        """Record a completed page of ``count`` records."""
        self.loaded_once = True
        self.state = CursorState.EXHAUSTED if count < self.page_size else CursorState.IDLE

    def fail(self) -> None:
        """Record a failed load; the next attempt refetches the same page."""
        if self.state is CursorState.LOADING_MORE:
            self.page -= 1
        self.state = CursorState.IDLE

    def is_current(self, generation: int) -> bool:
        return generation == self.generation
