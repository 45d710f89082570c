"""Table queries for Anchor.

Every function takes the gateway as its first argument and returns model
objects. Failures are raised as AnchorError with the operation named in the
message.
"""

import logging
import random
from collections import defaultdict
from dataclasses import dataclass
from typing import Optional

from .errors import AnchorError, ErrorKind, is_duplicate_url_error, validation_error
from .gateway import Order, RestGateway, eq, escape_like, ilike, in_
from .models import (
    MAX_NOTE_LENGTH, MAX_SPACE_NAME_LENGTH, SPACE_COLORS, TAG_COLORS,
    Link, LinkTag, LinkWithTags, Space, Tag, now_iso,
)
from .urls import ensure_protocol, extract_domain, normalize_url, validate_url

logger = logging.getLogger("anchor")

# Sentinel for "leave this column unchanged"
UNSET = object()


def validate_note(note: Optional[str]) -> None:
    if note is not None and len(note) > MAX_NOTE_LENGTH:
        raise validation_error(f"Note must be {MAX_NOTE_LENGTH} characters or fewer")


# =============================================================================
# Link queries (batched join)
# =============================================================================

async def fetch_links_with_tags(
    gw: RestGateway,
    user_id: str,
    offset: int = 0,
    limit: int = 30,
    space_id: Optional[str] = None,
) -> list[LinkWithTags]:
    """Fetch one page of links with their tags, in exactly two queries.

    The first query selects the page of links; the second selects every
    link_tags row for those links with the tag embedded. Rows are grouped by
    link id in memory. An empty page skips the second query.
    """
    filters = [eq("user_id", user_id)]
    if space_id is not None:
        filters.append(eq("space_id", space_id))

    try:
        rows = await gw.select(
            "links",
            filters=filters,
            order=[Order("created_at", ascending=False)],
            offset=offset,
            limit=limit,
        )
    except AnchorError as e:
        raise AnchorError.wrap(e, "Failed to fetch links") from e

    return await _attach_tags(gw, [Link.from_row(r) for r in rows])


async def fetch_link_with_tags(gw: RestGateway, link_id: str) -> Optional[LinkWithTags]:
    """Fetch one link with its tags, or None if it no longer exists."""
    try:
        rows = await gw.select("links", filters=[eq("id", link_id)], limit=1)
    except AnchorError as e:
        raise AnchorError.wrap(e, "Failed to fetch link") from e

    records = await _attach_tags(gw, [Link.from_row(r) for r in rows])
    return records[0] if records else None


async def _attach_tags(gw: RestGateway, links: list[Link]) -> list[LinkWithTags]:
    if not links:
        return []

    try:
        join_rows = await gw.select(
            "link_tags",
            columns="link_id,tags(*)",
            filters=[in_("link_id", [link.id for link in links])],
        )
    except AnchorError as e:
        raise AnchorError.wrap(e, "Failed to fetch link tags") from e

    tags_by_link: dict[str, list[Tag]] = defaultdict(list)
    for row in join_rows:
        tag_row = row.get("tags")
        if tag_row:
            tags_by_link[row["link_id"]].append(Tag.from_row(tag_row))

    return [LinkWithTags(link=link, tags=tags_by_link.get(link.id, [])) for link in links]


async def find_link_by_normalized_url(gw: RestGateway, user_id: str, normalized_url: str) -> Optional[Link]:
    """Get the user's link with this normalized URL, if any."""
    rows = await gw.select(
        "links",
        filters=[eq("user_id", user_id), eq("normalized_url", normalized_url)],
        order=[Order("created_at")],
        limit=1,
    )
    return Link.from_row(rows[0]) if rows else None


@dataclass
class SaveResult:
    """Outcome of the save flow.

    ``duplicate_of`` is set when the user already saved the same normalized
    URL. ``link`` is None when the save was skipped because of it.
    ``tag_error`` is set when the link was saved but its tags were not.
    """

    link: Optional[Link]
    duplicate_of: Optional[Link] = None
    tag_error: Optional[AnchorError] = None

    @property
    def is_duplicate(self) -> bool:
        return self.duplicate_of is not None


async def save_link(
    gw: RestGateway,
    user_id: str,
    url: str,
    title: Optional[str] = None,
    note: Optional[str] = None,
    space_id: Optional[str] = None,
    tag_names: Optional[list[str]] = None,
    allow_duplicate: bool = False,
) -> SaveResult:
    """Save a new link, warning about duplicates instead of failing on them."""
    error = validate_url(url)
    if error:
        raise validation_error(error)
    validate_note(note)

    url = ensure_protocol(url)
    normalized = normalize_url(url)

    try:
        existing = await find_link_by_normalized_url(gw, user_id, normalized)
    except AnchorError as e:
        raise AnchorError.wrap(e, "Failed to check for duplicates") from e

    if existing and not allow_duplicate:
        logger.info(f"Duplicate save of {normalized} (existing link {existing.id})")
        return SaveResult(link=None, duplicate_of=existing)

    try:
        rows = await gw.insert("links", {
            "user_id": user_id,
            "url": url,
            "normalized_url": normalized,
            "title": title,
            "domain": extract_domain(url),
            "note": note or None,
            "space_id": space_id,
        })
    except AnchorError as e:
        if is_duplicate_url_error(e) or (e.kind is ErrorKind.CONFLICT and e.code == "23505"):
            # Saved from another device between the check and the insert
            existing = await find_link_by_normalized_url(gw, user_id, normalized)
            if existing:
                return SaveResult(link=None, duplicate_of=existing)
        raise AnchorError.wrap(e, "Failed to save link") from e

    link = Link.from_row(rows[0])
    logger.info(f"Saved link {link.id}: {url}")

    if tag_names:
        try:
            tags = [await get_or_create_tag(gw, user_id, name) for name in tag_names if name.strip()]
            await set_link_tags(gw, link.id, [t.id for t in tags])
        except AnchorError as e:
            logger.warning(f"Saved link {link.id} but could not tag it: {e.message}")
            tag_error = AnchorError.wrap(e, "Link saved but tags were not applied", partial=True)
            return SaveResult(link=link, duplicate_of=existing, tag_error=tag_error)

    return SaveResult(link=link, duplicate_of=existing)


async def update_link(
    gw: RestGateway,
    link_id: str,
    note=UNSET,
    space_id=UNSET,
    tag_ids: Optional[list[str]] = None,
) -> Link:
    """Update a link's note and/or space, and replace its tags if given."""
    if note is not UNSET:
        validate_note(note)

    values = {"updated_at": now_iso()}
    if note is not UNSET:
        values["note"] = note or None
    if space_id is not UNSET:
        values["space_id"] = space_id

    try:
        rows = await gw.update("links", values, filters=[eq("id", link_id)])
    except AnchorError as e:
        raise AnchorError.wrap(e, "Failed to update link") from e
    if not rows:
        raise AnchorError(ErrorKind.NOT_FOUND, f"Link {link_id} not found")

    if tag_ids is not None:
        try:
            await set_link_tags(gw, link_id, tag_ids)
        except AnchorError as e:
            # The links row is already patched
            raise AnchorError.wrap(e, "Failed to update link tags", partial=True) from e

    return Link.from_row(rows[0])


async def mark_link_opened(gw: RestGateway, link_id: str, opened_at: Optional[str] = None) -> Link:
    """Record that the link was opened. Only the timestamp changes."""
    try:
        rows = await gw.update("links", {"opened_at": opened_at or now_iso()}, filters=[eq("id", link_id)])
    except AnchorError as e:
        raise AnchorError.wrap(e, "Failed to mark link as opened") from e
    if not rows:
        raise AnchorError(ErrorKind.NOT_FOUND, f"Link {link_id} not found")
    return Link.from_row(rows[0])


async def delete_link(gw: RestGateway, link_id: str) -> None:
    """Delete a link. Its link_tags rows go with it (ON DELETE CASCADE)."""
    try:
        await gw.delete("links", filters=[eq("id", link_id)])
    except AnchorError as e:
        raise AnchorError.wrap(e, "Failed to delete link") from e


# =============================================================================
# Tag queries
# =============================================================================

async def get_user_tags(gw: RestGateway, user_id: str) -> list[Tag]:
    """Get all tags for a user, most used first."""
    try:
        rows = await gw.select(
            "tags",
            filters=[eq("user_id", user_id)],
            order=[Order("usage_count", ascending=False), Order("name")],
        )
    except AnchorError as e:
        raise AnchorError.wrap(e, "Failed to fetch tags") from e
    return [Tag.from_row(r) for r in rows]


async def get_or_create_tag(gw: RestGateway, user_id: str, name: str) -> Tag:
    """Get a tag by case-insensitive name, creating it on first use."""
    name = name.strip()
    if not name:
        raise validation_error("Tag name is required")

    try:
        rows = await gw.select(
            "tags",
            filters=[eq("user_id", user_id), ilike("name", escape_like(name))],
        )
        match = next((r for r in rows if r["name"].lower() == name.lower()), None)
        if match:
            return Tag.from_row(match)

        rows = await gw.insert("tags", {
            "user_id": user_id,
            "name": name,
            "color": random.choice(TAG_COLORS),
        })
    except AnchorError as e:
        raise AnchorError.wrap(e, "Failed to get or create tag") from e

    logger.info(f"Created tag {name!r}")
    return Tag.from_row(rows[0])


async def set_link_tags(gw: RestGateway, link_id: str, tag_ids: list[str]) -> None:
    """Set the tags for a link (replaces existing tags)."""
    await gw.delete("link_tags", filters=[eq("link_id", link_id)])
    unique_ids = list(dict.fromkeys(tag_ids))
    if unique_ids:
        await gw.insert("link_tags", [LinkTag(link_id=link_id, tag_id=t).to_row() for t in unique_ids])


# =============================================================================
# Space queries
# =============================================================================

async def get_user_spaces(gw: RestGateway, user_id: str) -> list[Space]:
    """Get all spaces for a user, default spaces first, then by name."""
    try:
        rows = await gw.select(
            "spaces",
            filters=[eq("user_id", user_id)],
            order=[Order("is_default", ascending=False), Order("name")],
        )
    except AnchorError as e:
        raise AnchorError.wrap(e, "Failed to fetch spaces") from e
    return [Space.from_row(r) for r in rows]


def validate_space_name(name: Optional[str], existing: list[Space], exclude_id: Optional[str] = None) -> str:
    """Check a space name and return it trimmed."""
    name = (name or "").strip()
    if not name:
        raise validation_error("Space name is required")
    if len(name) > MAX_SPACE_NAME_LENGTH:
        raise validation_error(f"Space name must be {MAX_SPACE_NAME_LENGTH} characters or fewer")
    if any(s.name.lower() == name.lower() and s.id != exclude_id for s in existing):
        raise AnchorError(ErrorKind.CONFLICT, f"A space named {name!r} already exists")
    return name


def validate_space_color(color: str) -> None:
    if color.lower() not in {c.lower() for c in SPACE_COLORS}:
        raise validation_error(f"Unsupported space color {color!r}")


async def create_space(gw: RestGateway, user_id: str, name: str, color: Optional[str] = None) -> Space:
    """Create a custom (non-default) space."""
    existing = await get_user_spaces(gw, user_id)
    name = validate_space_name(name, existing)
    color = color or random.choice(SPACE_COLORS[:14])
    validate_space_color(color)

    try:
        rows = await gw.insert("spaces", {
            "user_id": user_id,
            "name": name,
            "color": color,
            "is_default": False,
        })
    except AnchorError as e:
        raise AnchorError.wrap(e, "Failed to create space") from e
    return Space.from_row(rows[0])


async def update_space(
    gw: RestGateway,
    user_id: str,
    space_id: str,
    name: Optional[str] = None,
    color: Optional[str] = None,
) -> Space:
    """Rename and/or recolor a space. Default spaces cannot be renamed."""
    existing = await get_user_spaces(gw, user_id)
    space = next((s for s in existing if s.id == space_id), None)
    if space is None:
        raise AnchorError(ErrorKind.NOT_FOUND, f"Space {space_id} not found")

    values = {"updated_at": now_iso()}
    if name is not None:
        if space.is_default:
            raise validation_error("Default spaces cannot be renamed")
        values["name"] = validate_space_name(name, existing, exclude_id=space_id)
    if color is not None:
        validate_space_color(color)
        values["color"] = color

    try:
        rows = await gw.update("spaces", values, filters=[eq("id", space_id)])
    except AnchorError as e:
        raise AnchorError.wrap(e, "Failed to update space") from e
    return Space.from_row(rows[0])


async def delete_space(gw: RestGateway, user_id: str, space_id: str) -> None:
    """Delete a custom space. Its links become unassigned (server side)."""
    spaces = await get_user_spaces(gw, user_id)
    space = next((s for s in spaces if s.id == space_id), None)
    if space is None:
        raise AnchorError(ErrorKind.NOT_FOUND, f"Space {space_id} not found")
    if space.is_default:
        raise validation_error("Default spaces cannot be deleted")

    try:
        await gw.delete("spaces", filters=[eq("id", space_id)])
    except AnchorError as e:
        raise AnchorError.wrap(e, "Failed to delete space") from e
