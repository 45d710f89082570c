"""Per-user composition root.

An ``AnchorSession`` owns the gateway and every cached view for one signed-in
user: the all-links view and one view per space, keyed by space id. Views
are created on first use and disposed when their last observer detaches.
Switching user disposes all of them.
"""

import logging
from typing import Optional

from . import db
from .config import Config
from .db import UNSET, SaveResult
from .errors import AnchorError, ErrorKind
from .gateway import RestGateway, RetryPolicy
from .models import LinkWithTags, Space, Tag
from .observable import Observable, Registry
from .search import LinkSearch
from .store import LinkStore, PendingDelete

logger = logging.getLogger("anchor")


class LinkView(Observable):
    """A store and its search, published as one filtered list."""

    def __init__(self, store: LinkStore, search_delay: float = 0.3, undo_window: float = 5.0):
        super().__init__()
        self.store = store
        self.search = LinkSearch(store, search_delay)
        self.undo_window = undo_window
        self._unsubscribe_search = self.search.subscribe(self._publish)

    @property
    def space_id(self) -> Optional[str]:
        return self.store.space_id

    @property
    def snapshot(self) -> list[LinkWithTags]:
        """Loaded links matching the current query."""
        return self.search.results

    @property
    def query(self) -> str:
        return self.search.query

    @property
    def has_more(self) -> bool:
        return self.store.has_more

    async def load(self) -> list[LinkWithTags]:
        await self.store.load()
        return self.snapshot

    async def refresh(self) -> list[LinkWithTags]:
        await self.store.refresh()
        return self.snapshot

    async def load_next_page(self) -> bool:
        return await self.store.load_next_page()

    async def find(self, link_id: str) -> LinkWithTags:
        """Return a link, loading further pages until it turns up."""
        await self.store.load()
        while True:
            for record in self.store.snapshot:
                if record.id == link_id:
                    return record
            if not await self.store.load_next_page():
                raise AnchorError(ErrorKind.NOT_FOUND, f"Link {link_id} not found")

    async def delete(self, link_id: str) -> None:
        await self.store.delete(link_id)

    def delete_with_undo(self, link_id: str, window: Optional[float] = None) -> PendingDelete:
        return self.store.delete_with_undo(link_id, self.undo_window if window is None else window)

    async def update(self, link_id: str, note=UNSET, space_id=UNSET, tags: Optional[list[Tag]] = None) -> LinkWithTags:
        return await self.store.update(link_id, note=note, space_id=space_id, tags=tags)

    async def mark_opened(self, link_id: str) -> LinkWithTags:
        return await self.store.mark_opened(link_id)

    def set_query(self, text: str) -> None:
        self.search.set_query(text)

    def flush(self) -> None:
        self.search.flush()

    def dispose(self) -> None:
        self._unsubscribe_search()
        self.search.dispose()
        self.store.dispose()
        super().dispose()


class AnchorSession:
    """Caches and operations for one signed-in user."""

    def __init__(
        self,
        gw: RestGateway,
        user_id: str,
        page_size: int = 30,
        search_debounce: float = 0.3,
        undo_window: float = 5.0,
    ):
        """
        Initialize the session. No request is made until a view is read.

        Args:
            gw: REST gateway carrying the user's access token
            user_id: Signed-in user
            page_size: Links per page for every view
            search_debounce: Seconds of quiet before a typed query applies
            undo_window: Seconds a delete can be undone
        """
        self.gw = gw
        self.user_id = user_id
        self.page_size = page_size
        self.search_debounce = search_debounce
        self.undo_window = undo_window
        self._links: Optional[LinkView] = None
        self._spaces: Registry[str, LinkView] = Registry(self._make_view)

    @classmethod
    def from_config(cls, config: Config, transport=None) -> "AnchorSession":
        """Build a session from loaded configuration."""
        if not config.user_id:
            raise ValueError("ANCHOR_USER_ID is required")
        gw = RestGateway(
            config.supabase_url,
            config.supabase_key,
            access_token=config.access_token,
            retry=RetryPolicy(
                attempts=config.retry_attempts,
                delay=config.retry_delay,
                timeout=config.request_timeout,
            ),
            transport=transport,
        )
        return cls(
            gw,
            config.user_id,
            page_size=config.page_size,
            search_debounce=config.search_debounce,
            undo_window=config.undo_window,
        )

    def _make_view(self, space_id: Optional[str]) -> LinkView:
        store = LinkStore(self.gw, self.user_id, space_id=space_id, page_size=self.page_size)
        return LinkView(store, self.search_debounce, self.undo_window)

    # =========================================================================
    # Views
    # =========================================================================

    @property
    def links(self) -> LinkView:
        """All of the user's links."""
        if self._links is None:
            view = self._make_view(None)
            view.on_idle(self._drop_links)
            self._links = view
        return self._links

    def _drop_links(self) -> None:
        if self._links is not None:
            logger.debug("Disposing all-links view")
            self._links.dispose()
            self._links = None

    def space(self, space_id: str) -> LinkView:
        """Links in one space, with a search independent of every other view."""
        return self._spaces.get(space_id)

    def has_space_view(self, space_id: str) -> bool:
        return space_id in self._spaces

    def switch_user(self, user_id: str, access_token: Optional[str] = None) -> None:
        """Drop every cached view and continue as another user."""
        if user_id == self.user_id and access_token in (None, self.gw.access_token):
            return
        logger.info(f"Switching user {self.user_id} -> {user_id}")
        self.close()
        self.user_id = user_id
        if access_token is not None:
            self.gw.access_token = access_token

    def close(self) -> None:
        self._drop_links()
        self._spaces.clear()

    async def _refresh_loaded(self, *space_ids: Optional[str]) -> None:
        """Refetch the all-links view and the given space views, where already loaded."""
        if self._links is not None and self._links.store.loaded:
            await self._links.refresh()
        for space_id in dict.fromkeys(space_ids):
            if space_id is not None and space_id in self._spaces:
                view = self._spaces.get(space_id)
                if view.store.loaded:
                    await view.refresh()

    # =========================================================================
    # Link operations (all-links view)
    # =========================================================================

    async def refresh(self) -> list[LinkWithTags]:
        return await self.links.refresh()

    async def load_next_page(self) -> bool:
        return await self.links.load_next_page()

    def set_query(self, text: str) -> None:
        self.links.set_query(text)

    async def delete(self, link_id: str) -> None:
        record = await self.links.find(link_id)
        await self.links.delete(link_id)
        if record.link.space_id and record.link.space_id in self._spaces:
            view = self._spaces.get(record.link.space_id)
            if view.store.loaded:
                await view.refresh()

    async def update(
        self,
        link_id: str,
        note=UNSET,
        space_id=UNSET,
        tags: Optional[list[Tag]] = None,
    ) -> LinkWithTags:
        """Edit a link. Space views it moved between are refetched."""
        record = await self.links.find(link_id)
        old_space_id = record.link.space_id
        updated = await self.links.update(link_id, note=note, space_id=space_id, tags=tags)
        affected = [old_space_id]
        if space_id is not UNSET:
            affected.append(space_id)
        for sid in dict.fromkeys(affected):
            if sid is not None and sid in self._spaces:
                view = self._spaces.get(sid)
                if view.store.loaded:
                    await view.refresh()
        return updated

    async def mark_opened(self, link_id: str) -> LinkWithTags:
        await self.links.find(link_id)
        return await self.links.mark_opened(link_id)

    async def save_link(
        self,
        url: str,
        title: Optional[str] = None,
        note: Optional[str] = None,
        space_id: Optional[str] = None,
        tag_names: Optional[list[str]] = None,
        allow_duplicate: bool = False,
    ) -> SaveResult:
        """Save a link and refetch the views that should now show it.

        A link that was saved but could not be tagged comes back with
        ``tag_error`` set, and the views are still refetched.
        """
        result = await db.save_link(
            self.gw,
            self.user_id,
            url,
            title=title,
            note=note,
            space_id=space_id,
            tag_names=tag_names,
            allow_duplicate=allow_duplicate,
        )
        if result.link is not None:
            await self._refresh_loaded(space_id)
        return result

    # =========================================================================
    # Tags and spaces
    # =========================================================================

    async def get_tags(self) -> list[Tag]:
        return await db.get_user_tags(self.gw, self.user_id)

    async def resolve_tags(self, names: list[str]) -> list[Tag]:
        """Get or create a tag for each name, dropping repeats."""
        tags: dict[str, Tag] = {}
        for name in names:
            if name.strip():
                tag = await db.get_or_create_tag(self.gw, self.user_id, name)
                tags.setdefault(tag.id, tag)
        return list(tags.values())

    async def get_spaces(self) -> list[Space]:
        return await db.get_user_spaces(self.gw, self.user_id)

    async def create_space(self, name: str, color: Optional[str] = None) -> Space:
        return await db.create_space(self.gw, self.user_id, name, color)

    async def update_space(self, space_id: str, name: Optional[str] = None, color: Optional[str] = None) -> Space:
        return await db.update_space(self.gw, self.user_id, space_id, name=name, color=color)

    async def delete_space(self, space_id: str) -> None:
        """Delete a custom space; its links stay, unassigned."""
        await db.delete_space(self.gw, self.user_id, space_id)
        self._spaces.evict(space_id)
        await self._refresh_loaded()
