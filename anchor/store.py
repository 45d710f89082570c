"""Cache of joined link records with paging and optimistic edits.

A ``LinkStore`` holds the pages fetched so far for one user (optionally
scoped to one space). Every snapshot replacement is published to the
store's observers. All methods run on the event loop; the store is never
touched from another thread, so it takes no locks.
"""

import asyncio
import logging
from typing import Optional

from . import db
from .db import UNSET
from .errors import AnchorError, ErrorKind
from .gateway import RestGateway
from .models import LinkWithTags, Tag, now_iso
from .observable import Observable
from .optimistic import confirm, delete_mutation, run_mutation, update_mutation
from .pagination import CursorState, PaginationCursor

logger = logging.getLogger("anchor")


class LinkStore(Observable):
    """Reactive cache of links with their tags."""

    def __init__(
        self,
        gw: RestGateway,
        user_id: str,
        space_id: Optional[str] = None,
        page_size: int = 30,
    ):
        """
        Initialize the store. Nothing is fetched until the first read.

        Args:
            gw: REST gateway
            user_id: Owner of the links
            space_id: Restrict the store to one space (None for all links)
            page_size: Links per page
        """
        super().__init__()
        self.gw = gw
        self.user_id = user_id
        self.space_id = space_id
        self.cursor = PaginationCursor(page_size)
        self.error: Optional[AnchorError] = None
        self._snapshot: Optional[list[LinkWithTags]] = None
        self._initial_load: Optional[asyncio.Future] = None

    def __repr__(self) -> str:
        scope = f"space={self.space_id}" if self.space_id else "all"
        return f"LinkStore(user={self.user_id}, {scope}, state={self.state.value})"

    @property
    def snapshot(self) -> list[LinkWithTags]:
        """Current records (empty before the first load)."""
        return list(self._snapshot or [])

    @property
    def loaded(self) -> bool:
        return self._snapshot is not None

    @property
    def state(self) -> CursorState:
        return self.cursor.state

    @property
    def has_more(self) -> bool:
        return self.cursor.has_more

    def _publish(self, snapshot: list[LinkWithTags]) -> None:
        self._snapshot = list(snapshot)
        super()._publish(self.snapshot)

    async def _fetch_page(self) -> list[LinkWithTags]:
        return await db.fetch_links_with_tags(
            self.gw,
            self.user_id,
            offset=self.cursor.offset,
            limit=self.cursor.page_size,
            space_id=self.space_id,
        )

    async def load(self) -> list[LinkWithTags]:
        """Return the snapshot, fetching the first page on first read."""
        if self._snapshot is not None:
            return self.snapshot
        if self._initial_load is None:
            self._initial_load = asyncio.ensure_future(self.refresh())
            self._initial_load.add_done_callback(self._clear_initial_load)
        await asyncio.shield(self._initial_load)
        return self.snapshot

    def _clear_initial_load(self, future: asyncio.Future) -> None:
        self._initial_load = None
        if not future.cancelled():
            # Retrieved here so an unawaited failure is not reported as lost
            future.exception()

    async def refresh(self) -> list[LinkWithTags]:
        """Discard cached pages and refetch the first page."""
        generation = self.cursor.begin_initial()
        logger.debug(f"{self!r}: loading first page")

        try:
            page = await self._fetch_page()
        except AnchorError as e:
            if self.cursor.is_current(generation):
                self.cursor.fail()
                self.error = e
            logger.error(f"{self!r}: refresh failed: {e.message}")
            raise

        if not self.cursor.is_current(generation):
            # A newer refresh started while this one was in flight
            return self.snapshot

        self.cursor.finish(len(page))
        self.error = None
        self._publish(page)
        logger.info(f"Loaded {len(page)} links ({'end of data' if not self.has_more else 'more available'})")
        return self.snapshot

    async def load_next_page(self) -> bool:
        """
        Append the next page to the snapshot.

        Returns:
            True if a page was fetched, False if the call was a no-op
            (already loading, or the previous page was the last one)
        """
        if self._snapshot is None:
            await self.load()
            return True

        if not self.cursor.can_load_more():
            logger.debug(f"{self!r}: skipping load_next_page")
            return False

        generation = self.cursor.begin_more()
        logger.debug(f"{self!r}: loading page {self.cursor.page}")

        try:
            page = await self._fetch_page()
        except AnchorError as e:
            if self.cursor.is_current(generation):
                self.cursor.fail()
                self.error = e
            logger.error(f"{self!r}: loading page failed: {e.message}")
            raise

        if not self.cursor.is_current(generation):
            return False

        self.cursor.finish(len(page))
        current = self.snapshot
        seen = {r.id for r in current}
        self._publish(current + [r for r in page if r.id not in seen])
        logger.info(f"Total links now: {len(self._snapshot)}")
        return True

    def get(self, link_id: str) -> LinkWithTags:
        for record in self.snapshot:
            if record.id == link_id:
                return record
        raise AnchorError(ErrorKind.NOT_FOUND, f"Link {link_id} is not loaded")

    async def delete(self, link_id: str) -> None:
        """Remove a link optimistically, restoring it if the delete fails."""
        self.get(link_id)
        mutation = delete_mutation(self.snapshot, link_id, lambda: db.delete_link(self.gw, link_id))
        await run_mutation(mutation, lambda: self.snapshot, self._publish)

    async def update(
        self,
        link_id: str,
        note=UNSET,
        space_id=UNSET,
        tags: Optional[list[Tag]] = None,
    ) -> LinkWithTags:
        """
        Edit a link optimistically, restoring the previous record if the update fails.

        If the row was patched but replacing its tags failed, the record is
        reloaded from the server instead.

        Args:
            link_id: Link to edit
            note: New note (UNSET to leave unchanged, None to clear)
            space_id: New space (UNSET to leave unchanged, None to unassign)
            tags: Replacement tag list (None to leave unchanged)

        Returns:
            The record as published
        """
        current = self.get(link_id)
        if note is not UNSET:
            db.validate_note(note)

        changes = {"updated_at": now_iso()}
        if note is not UNSET:
            changes["note"] = note or None
        if space_id is not UNSET:
            changes["space_id"] = space_id
        updated = current.with_changes(tags=tags, **changes)

        async def remote():
            await db.update_link(
                self.gw,
                link_id,
                note=note,
                space_id=space_id,
                tag_ids=None if tags is None else [t.id for t in tags],
            )

        mutation = update_mutation(self.snapshot, updated, remote, lambda: db.fetch_link_with_tags(self.gw, link_id))
        await run_mutation(mutation, lambda: self.snapshot, self._publish)
        return updated

    async def mark_opened(self, link_id: str) -> LinkWithTags:
        """Stamp opened_at optimistically."""
        opened_at = now_iso()
        updated = self.get(link_id).with_changes(opened_at=opened_at)
        mutation = update_mutation(
            self.snapshot,
            updated,
            lambda: db.mark_link_opened(self.gw, link_id, opened_at),
        )
        await run_mutation(mutation, lambda: self.snapshot, self._publish)
        return updated

    def delete_with_undo(self, link_id: str, window: float = 5.0) -> "PendingDelete":
        """Remove a link now and delete it remotely once the undo window passes."""
        self.get(link_id)
        mutation = delete_mutation(self.snapshot, link_id, lambda: db.delete_link(self.gw, link_id))
        return PendingDelete(self, mutation, window)


class PendingDelete:
    """A delete that can still be undone during its window."""

    def __init__(self, store: LinkStore, mutation, window: float):
        self.store = store
        self.mutation = mutation
        self.window = window
        self.undone = False
        self._committing = False

        store._publish(mutation.forward(store.snapshot))
        self._task = asyncio.ensure_future(self._commit())
        self._task.add_done_callback(self._retrieve)

    async def _commit(self) -> None:
        await asyncio.sleep(self.window)
        self._committing = True
        try:
            await self.mutation.remote()
        except asyncio.CancelledError:
            self.store._publish(self.mutation.compensate(self.store.snapshot))
            logger.warning(f"Rolled back cancelled {self.mutation.description}")
            raise
        except Exception as e:
            self.store._publish(self.mutation.compensate(self.store.snapshot))
            logger.warning(f"Rolled back {self.mutation.description}: {e}")
            raise AnchorError.wrap(e, f"Could not {self.mutation.description}") from e
        confirm(self.mutation, lambda: self.store.snapshot, self.store._publish)

    def _retrieve(self, task: asyncio.Future) -> None:
        if not task.cancelled():
            # Retrieved here so a failure nobody waits on is not reported as lost
            task.exception()

    @property
    def done(self) -> bool:
        return self._task.done()

    def undo(self) -> bool:
        """
        Restore the link if the remote delete has not started.

        Returns:
            True if the delete was cancelled, False if it was too late
        """
        if self._committing or self._task.done():
            return False
        self._task.cancel()
        self.undone = True
        self.store._publish(self.mutation.compensate(self.store.snapshot))
        logger.info(f"Undid {self.mutation.description}")
        return True

    async def wait(self) -> bool:
        """
        Wait for the window to close.

        Returns:
            True if the link was deleted remotely, False if it was undone

        Raises:
            AnchorError: If the remote delete failed (the link was restored)
        """
        try:
            await self._task
        except asyncio.CancelledError:
            if self.undone:
                return False
            raise
        return True
