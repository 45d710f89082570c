"""Anchor - client data layer for the Anchor bookmark app.

Caches saved links fetched from the hosted Postgres REST interface, applies
edits optimistically, and filters the cached page as the user types.
"""

__version__ = "0.1.0"
