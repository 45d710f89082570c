"""Publish/subscribe primitives with explicit lifecycle.

Observers are plain callables invoked synchronously on the event loop with
the newly published value. ``subscribe`` returns the unsubscribe function.
"""

import logging
from typing import Any, Callable, Generic, Hashable, TypeVar

logger = logging.getLogger("anchor")

Callback = Callable[[Any], None]


class Observable:
    """Holds a value and notifies observers whenever it is replaced."""

    def __init__(self):
        self._observers: list[Callback] = []
        self._idle_hooks: list[Callable[[], None]] = []
        self._disposed = False

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    @property
    def disposed(self) -> bool:
        return self._disposed

    def subscribe(self, callback: Callback) -> Callable[[], None]:
        """Register an observer. Call the returned function to detach it."""
        if self._disposed:
            raise RuntimeError(f"{type(self).__name__} has been disposed")
        self._observers.append(callback)

        def unsubscribe() -> None:
            if callback not in self._observers:
                return
            self._observers.remove(callback)
            if not self._observers:
                for hook in list(self._idle_hooks):
                    hook()

        return unsubscribe

    def on_idle(self, hook: Callable[[], None]) -> None:
        """Run ``hook`` when the last observer unsubscribes."""
        self._idle_hooks.append(hook)

    def _publish(self, value: Any) -> None:
        for callback in list(self._observers):
            callback(value)

    def dispose(self) -> None:
        self._observers.clear()
        self._idle_hooks.clear()
        self._disposed = True


K = TypeVar("K", bound=Hashable)
V = TypeVar("V", bound=Observable)


class Registry(Generic[K, V]):
    """Keyed cache of observables, evicted when their last observer detaches."""

    def __init__(self, factory: Callable[[K], V]):
        self._factory = factory
        self._entries: dict[K, V] = {}

    def __contains__(self, key: K) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: K) -> V:
        """Return the entry for ``key``, creating it on first use."""
        entry = self._entries.get(key)
        if entry is None:
            entry = self._factory(key)
            entry.on_idle(lambda: self.evict(key))
            self._entries[key] = entry
        return entry

    def evict(self, key: K) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            logger.debug(f"Evicting {type(entry).__name__} for {key!r}")
            entry.dispose()

    def clear(self) -> None:
        for key in list(self._entries):
            self.evict(key)
