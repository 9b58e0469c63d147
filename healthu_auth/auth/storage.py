"""
Key-value storage used by the login flow vault and the user directory.

Both components take a KeyValueStore instead of owning a dict, so a durable
backend (Redis, a database table) can be swapped in without touching flow
logic. The default InMemoryStore lives in process memory: every pending
login and every user record is lost when the process restarts, and state is
not shared between workers.

Each method is one synchronous step, which makes it atomic with respect to
the asyncio event loop. Callers must not split a read-modify-write across an
await.
"""

from typing import Any, Dict, Iterator, Optional, Protocol, Tuple


class KeyValueStore(Protocol):
    """Minimal storage interface for flow state and user records."""

    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def pop(self, key: str) -> Optional[Any]:
        """Remove and return the value for key, or None if absent."""
        ...

    def delete(self, key: str) -> bool:
        ...

    def items(self) -> Iterator[Tuple[str, Any]]:
        ...

    def __len__(self) -> int:
        ...


class InMemoryStore:
    """Dict-backed KeyValueStore. Not persistent, not shared across processes."""

    def __init__(self):
        self._data: Dict[str, Any] = {}

    def get(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def pop(self, key: str) -> Optional[Any]:
        return self._data.pop(key, None)

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def items(self) -> Iterator[Tuple[str, Any]]:
        # Snapshot so callers may delete while iterating
        return iter(list(self._data.items()))

    def __len__(self) -> int:
        return len(self._data)
