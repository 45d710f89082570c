"""Anchor CLI - browse and manage saved links from the terminal.

Usage: anchor [--env-file PATH] [-v] <command> [options]

Reads the hosted database settings and the signed-in user from the
environment (or a .env file). See anchor.config for the variables.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path

import click

from . import __version__
from .config import load_config
from .db import UNSET
from .errors import AnchorError, friendly_message
from .models import SPACE_COLORS
from .session import AnchorSession

logger = logging.getLogger("anchor")


def setup_logging(level: str) -> logging.Logger:
    """Configure logging with the specified level."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)-5s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    logger.setLevel(log_level)
    return logger


def make_session(env_file: Path | None, verbose: bool) -> AnchorSession:
    """Load configuration, set up logging and build a session."""
    config = load_config(env_file)
    setup_logging("DEBUG" if verbose else config.log_level)
    return AnchorSession.from_config(config)


def run(ctx: click.Context, action):
    """Run ``action(session)`` on a fresh event loop and report failures."""
    try:
        session = make_session(ctx.obj["env_file"], ctx.obj["verbose"])
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)

    async def main():
        try:
            return await action(session)
        finally:
            session.close()

    try:
        return asyncio.run(main())
    except AnchorError as e:
        logger.debug(f"Command failed: {e!r}")
        click.echo(f"Error: {friendly_message(e)}", err=True)
        sys.exit(1)


def _record_json(record) -> dict:
    data = record.link.to_row()
    data["tags"] = record.tag_names
    return data


# =============================================================================
# CLI Group
# =============================================================================

@click.group()
@click.version_option(version=__version__, prog_name="anchor")
@click.option("--env-file", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Path to .env file (default: ./.env)")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, env_file, verbose):
    """Anchor - saved links, tags and spaces."""
    ctx.obj = {"env_file": env_file, "verbose": verbose}


# =============================================================================
# Link Commands
# =============================================================================

@cli.group()
def links():
    """Browse and manage saved links."""
    pass


@links.command("list")
@click.option("--space", "space_id", default=None, help="Only links in this space")
@click.option("--query", "-q", default=None, help="Filter by title, note, domain or tag")
@click.option("--pages", type=click.IntRange(min=1), default=1, help="Pages to load")
@click.option("--format", "output_format", type=click.Choice(["table", "json"]), default="table",
              help="Output format")
@click.pass_context
def links_list(ctx, space_id, query, pages, output_format):
    """List saved links, newest first."""

    async def action(session):
        view = session.space(space_id) if space_id else session.links
        await view.load()
        for _ in range(pages - 1):
            if not await view.load_next_page():
                break
        if query:
            view.set_query(query)
            view.flush()
        return view.snapshot, view.has_more

    records, has_more = run(ctx, action)

    if output_format == "json":
        click.echo(json.dumps([_record_json(r) for r in records], indent=2))
        return

    click.echo(f"{'ID':<38} {'Title':<40} {'Domain':<24} {'Tags':<20}")
    click.echo("-" * 124)
    for r in records:
        title = (r.link.title or r.link.url)[:40]
        domain = (r.link.domain or "")[:24]
        tags = ", ".join(r.tag_names)[:20]
        click.echo(f"{r.id:<38} {title:<40} {domain:<24} {tags:<20}")

    more = " (more available, use --pages)" if has_more else ""
    click.echo(f"\nTotal: {len(records)} links{more}")


@links.command("save")
@click.argument("url")
@click.option("--title", default=None, help="Title to store with the link")
@click.option("--note", default=None, help="Short note (200 characters max)")
@click.option("--tag", "tags", multiple=True, help="Tag name (repeatable)")
@click.option("--space", "space_id", default=None, help="Space to save into")
@click.option("--force", is_flag=True, help="Save even if the link was already saved")
@click.pass_context
def links_save(ctx, url, title, note, tags, space_id, force):
    """Save a link.

    URL: Address to save (https:// is added if missing).
    """

    async def action(session):
        return await session.save_link(
            url,
            title=title,
            note=note,
            space_id=space_id,
            tag_names=list(tags),
            allow_duplicate=force,
        )

    result = run(ctx, action)

    if result.link is None:
        click.echo(f"You've already saved this link (ID {result.duplicate_of.id}).", err=True)
        click.echo("Use --force to save it again.", err=True)
        sys.exit(3)

    if result.is_duplicate:
        click.echo(f"Warning: also saved as {result.duplicate_of.id}")
    click.echo(f"Saved {result.link.url} (ID {result.link.id})")
    if result.tag_error is not None:
        click.echo(f"Warning: tags were not applied. {friendly_message(result.tag_error)}", err=True)


@links.command("edit")
@click.argument("link_id")
@click.option("--note", default=None, help="New note (empty string clears it)")
@click.option("--space", "space_id", default=None, help="Move to this space (empty string unassigns)")
@click.option("--tag", "tags", multiple=True, help="Replace tags (repeatable)")
@click.option("--clear-tags", is_flag=True, help="Remove all tags")
@click.pass_context
def links_edit(ctx, link_id, note, space_id, tags, clear_tags):
    """Edit a link's note, space or tags.

    LINK_ID: ID of the link to edit.
    """

    async def action(session):
        new_tags = None
        if clear_tags:
            new_tags = []
        elif tags:
            new_tags = await session.resolve_tags(list(tags))
        return await session.update(
            link_id,
            note=UNSET if note is None else (note or None),
            space_id=UNSET if space_id is None else (space_id or None),
            tags=new_tags,
        )

    record = run(ctx, action)
    click.echo(f"Updated {record.id}")
    if record.link.note:
        click.echo(f"  Note: {record.link.note}")
    if record.tags:
        click.echo(f"  Tags: {', '.join(record.tag_names)}")


@links.command("delete")
@click.argument("link_id")
@click.pass_context
def links_delete(ctx, link_id):
    """Delete a link.

    LINK_ID: ID of the link to delete.
    """

    async def action(session):
        await session.delete(link_id)

    run(ctx, action)
    click.echo(f"Deleted {link_id}")


@links.command("open")
@click.argument("link_id")
@click.option("--launch", is_flag=True, help="Open the link in the default browser")
@click.pass_context
def links_open(ctx, link_id, launch):
    """Mark a link as opened and print its URL.

    LINK_ID: ID of the link to open.
    """

    async def action(session):
        return await session.mark_opened(link_id)

    record = run(ctx, action)
    click.echo(record.link.url)
    if launch:
        click.launch(record.link.url)


# =============================================================================
# Space Commands
# =============================================================================

@cli.group()
def spaces():
    """Manage spaces."""
    pass


@spaces.command("list")
@click.option("--format", "output_format", type=click.Choice(["table", "json"]), default="table",
              help="Output format")
@click.pass_context
def spaces_list(ctx, output_format):
    """List spaces, default spaces first."""

    async def action(session):
        return await session.get_spaces()

    items = run(ctx, action)

    if output_format == "json":
        data = [{"id": s.id, "name": s.name, "color": s.color, "is_default": s.is_default} for s in items]
        click.echo(json.dumps(data, indent=2))
        return

    click.echo(f"{'ID':<38} {'Name':<30} {'Color':<10} {'Default':<8}")
    click.echo("-" * 88)
    for s in items:
        click.echo(f"{s.id:<38} {s.name:<30} {s.color:<10} {'yes' if s.is_default else '':<8}")

    click.echo(f"\nTotal: {len(items)} spaces")


@spaces.command("create")
@click.argument("name")
@click.option("--color", type=click.Choice(SPACE_COLORS, case_sensitive=False), default=None,
              help="Space color (random if omitted)")
@click.pass_context
def spaces_create(ctx, name, color):
    """Create a space.

    NAME: Space name (1-50 characters).
    """

    async def action(session):
        return await session.create_space(name, color)

    space = run(ctx, action)
    click.echo(f"Created space {space.name} (ID {space.id})")


@spaces.command("rename")
@click.argument("space_id")
@click.argument("name")
@click.pass_context
def spaces_rename(ctx, space_id, name):
    """Rename a space. Default spaces cannot be renamed.

    SPACE_ID: ID of the space.
    NAME: New name.
    """

    async def action(session):
        return await session.update_space(space_id, name=name)

    space = run(ctx, action)
    click.echo(f"Renamed space {space.id} to {space.name}")


@spaces.command("delete")
@click.argument("space_id")
@click.option("--force", is_flag=True, help="Skip confirmation")
@click.pass_context
def spaces_delete(ctx, space_id, force):
    """Delete a space. Its links are kept, unassigned.

    SPACE_ID: ID of the space.
    """
    if not force and not click.confirm(f"Delete space {space_id}?"):
        click.echo("Cancelled.")
        return

    async def action(session):
        await session.delete_space(space_id)

    run(ctx, action)
    click.echo(f"Deleted space {space_id}")


# =============================================================================
# Tag Commands
# =============================================================================

@cli.group()
def tags():
    """Inspect tags."""
    pass


@tags.command("list")
@click.option("--format", "output_format", type=click.Choice(["table", "json"]), default="table",
              help="Output format")
@click.pass_context
def tags_list(ctx, output_format):
    """List tags, most used first."""

    async def action(session):
        return await session.get_tags()

    items = run(ctx, action)

    if output_format == "json":
        data = [{"id": t.id, "name": t.name, "color": t.color, "usage_count": t.usage_count} for t in items]
        click.echo(json.dumps(data, indent=2))
        return

    click.echo(f"{'Name':<30} {'Uses':<6} {'Color':<10}")
    click.echo("-" * 48)
    for t in items:
        click.echo(f"{t.name:<30} {t.usage_count:<6} {t.color:<10}")

    click.echo(f"\nTotal: {len(items)} tags")


def main():
    cli()


if __name__ == "__main__":
    main()
