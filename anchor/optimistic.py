"""Optimistic mutations with compensating rollback.

A mutation is a value object: the forward action applied to the cached
snapshot right away, the remote effect, and the compensating action applied
to whatever the snapshot has become if the remote effect fails.

When the remote effect fails after part of it was applied (an update whose
tag replacement fails after the row was patched), putting the prior record
back would show data the server no longer has. Such mutations carry a
``refetch`` that reads the record back from the server instead.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .errors import AnchorError
from .models import LinkWithTags

logger = logging.getLogger("anchor")

Snapshot = list[LinkWithTags]


@dataclass
class OptimisticMutation:
    """One optimistic change to a list of joined records."""

    description: str
    forward: Callable[[Snapshot], Snapshot]
    compensate: Callable[[Snapshot], Snapshot]
    remote: Callable[[], Awaitable[object]]
    prior: Optional[LinkWithTags] = None
    refetch: Optional[Callable[[], Awaitable[Optional[LinkWithTags]]]] = None


def delete_mutation(
    snapshot: Snapshot,
    link_id: str,
    remote: Callable[[], Awaitable[object]],
) -> OptimisticMutation:
    """Remove a record now; re-insert it on failure."""
    index = _index_of(snapshot, link_id)
    prior = snapshot[index]

    def forward(current: Snapshot) -> Snapshot:
        return [r for r in current if r.id != link_id]

    def compensate(current: Snapshot) -> Snapshot:
        if any(r.id == link_id for r in current):
            return list(current)
        restored = list(current)
        restored.insert(min(index, len(restored)), prior)
        return restored

    return OptimisticMutation(f"delete link {link_id}", forward, compensate, remote, prior)


def update_mutation(
    snapshot: Snapshot,
    updated: LinkWithTags,
    remote: Callable[[], Awaitable[object]],
    refetch: Optional[Callable[[], Awaitable[Optional[LinkWithTags]]]] = None,
) -> OptimisticMutation:
    """Replace a record now; restore the previous record on failure."""
    prior = snapshot[_index_of(snapshot, updated.id)]

    def forward(current: Snapshot) -> Snapshot:
        return [updated if r.id == updated.id else r for r in current]

    def compensate(current: Snapshot) -> Snapshot:
        # A record deleted in the meantime stays deleted
        return [prior if r.id == updated.id else r for r in current]

    return OptimisticMutation(f"update link {updated.id}", forward, compensate, remote, prior, refetch)


def _index_of(snapshot: Snapshot, link_id: str) -> int:
    for i, record in enumerate(snapshot):
        if record.id == link_id:
            return i
    raise KeyError(link_id)


def replace_record(current: Snapshot, link_id: str, fresh: Optional[LinkWithTags]) -> Snapshot:
    """Swap in the server's copy of a record, dropping it if the server has none."""
    if fresh is None:
        return [r for r in current if r.id != link_id]
    return [fresh if r.id == link_id else r for r in current]


async def _reconcile(
    mutation: OptimisticMutation,
    read: Callable[[], Snapshot],
    publish: Callable[[Snapshot], None],
) -> None:
    try:
        fresh = await mutation.refetch()
    except AnchorError as e:
        logger.warning(f"Could not reload after partial {mutation.description}: {e.message}")
        publish(mutation.compensate(read()))
        return
    publish(replace_record(read(), mutation.prior.id, fresh))
    logger.info(f"Reloaded {mutation.prior.id} after partial {mutation.description}")


def confirm(
    mutation: OptimisticMutation,
    read: Callable[[], Snapshot],
    publish: Callable[[Snapshot], None],
) -> None:
    """Re-apply the forward action after the remote effect succeeded.

    A refresh that completed while the remote call was in flight may have
    brought back the server's earlier copy of the record.
    """
    current = read()
    confirmed = mutation.forward(current)
    if confirmed != current:
        publish(confirmed)
    logger.debug(f"Confirmed {mutation.description}")


async def run_mutation(
    mutation: OptimisticMutation,
    read: Callable[[], Snapshot],
    publish: Callable[[Snapshot], None],
) -> None:
    """
    Apply a mutation optimistically.

    The forward action is published before the first suspension point, so
    observers see the change synchronously. If the remote effect raises, the
    compensating action is applied to the current snapshot, published, and
    the error is re-raised with context. A partially applied remote effect
    is reconciled from the server when the mutation can refetch. Cancelling
    the caller also rolls back.

    Args:
        mutation: The mutation to run
        read: Returns the current snapshot
        publish: Replaces the snapshot and notifies observers
    """
    publish(mutation.forward(read()))
    logger.debug(f"Applied optimistic {mutation.description}")

    try:
        await mutation.remote()
    except asyncio.CancelledError:
        publish(mutation.compensate(read()))
        logger.warning(f"Rolled back cancelled {mutation.description}")
        raise
    except Exception as e:
        if mutation.refetch is not None and getattr(e, "partial", False):
            await _reconcile(mutation, read, publish)
        else:
            publish(mutation.compensate(read()))
            logger.warning(f"Rolled back {mutation.description}: {e}")
        raise AnchorError.wrap(e, f"Could not {mutation.description}") from e

    confirm(mutation, read, publish)
