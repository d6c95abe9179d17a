"""Persistence port for the task board.

Every store keeps its records in memory and writes the whole collection
through one of these after each mutation. This keeps file I/O out of the
stores and lets tests or future backends (SQLite, etc.) swap in.
"""

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class RecordPersistence(Protocol):
    """Loads and saves one collection of records keyed by ID."""

    def load_all(self) -> dict[str, dict[str, Any]]:
        """Return every stored record, keyed by ID, in insertion order."""
        ...

    def save_all(self, records: dict[str, dict[str, Any]]) -> None:
        """Replace the stored collection atomically.

        Raises PersistenceError if the write fails; the previous
        contents must still be readable afterwards.
        """
        ...
