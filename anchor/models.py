"""Data models for Anchor.

Dataclass definitions mirroring the hosted tables, plus the joined
link-with-tags record the cache holds.
"""

from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Optional


def _from_row(cls, row: dict):
    """Build a dataclass from a REST row, ignoring unknown or embedded columns."""
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in row.items() if k in names})


@dataclass
class Space:
    """A mutually exclusive group of links ("space")."""
    id: str = ""
    user_id: str = ""
    name: str = ""
    color: str = ""
    is_default: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "Space":
        return _from_row(cls, row)


@dataclass
class Tag:
    """User-defined label, many-to-many with links."""
    id: str = ""
    user_id: str = ""
    name: str = ""
    color: str = ""
    usage_count: int = 0
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "Tag":
        return _from_row(cls, row)


@dataclass
class Link:
    """A saved link."""
    id: str = ""
    user_id: str = ""
    url: str = ""
    normalized_url: str = ""
    title: Optional[str] = None
    description: Optional[str] = None
    thumbnail_url: Optional[str] = None
    domain: Optional[str] = None
    note: Optional[str] = None
    space_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    opened_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "Link":
        return _from_row(cls, row)

    def to_row(self) -> dict:
        return asdict(self)


@dataclass
class LinkTag:
    """Junction row linking a link to a tag."""
    link_id: str = ""
    tag_id: str = ""

    @classmethod
    def from_row(cls, row: dict) -> "LinkTag":
        return _from_row(cls, row)

    def to_row(self) -> dict:
        return asdict(self)


@dataclass
class LinkWithTags:
    """A link joined with its tags. ``tags`` is never None."""
    link: Link
    tags: list[Tag] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.link.id

    @property
    def tag_names(self) -> list[str]:
        return [t.name for t in self.tags]

    def with_changes(self, tags: Optional[list[Tag]] = None, **link_fields) -> "LinkWithTags":
        """Return a copy with link fields and/or the tag list replaced."""
        return LinkWithTags(
            link=replace(self.link, **link_fields),
            tags=list(self.tags) if tags is None else list(tags),
        )


# Default spaces created for every user by a server-side trigger
DEFAULT_SPACE_NAMES = ("Unread", "Reference")

# Colors accepted by the spaces.valid_color constraint
SPACE_COLORS = (
    "#7cfec4", "#c3c3d1", "#ff8da7", "#000002", "#15afcf", "#1ac47f", "#ffdcd4",
    "#7e30d1", "#fff273", "#c5a3af", "#97cdd3", "#c2b8d9", "#1773fa", "#ed404d",
    # Legacy default space colors
    "#9333EA", "#DC2626",
)

# Palette new tags pick from
TAG_COLORS = SPACE_COLORS[:14]

MAX_NOTE_LENGTH = 200
MAX_SPACE_NAME_LENGTH = 50


# Helper functions for timestamp handling

def now_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()
