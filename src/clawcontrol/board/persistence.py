"""JSON file persistence for the task board.

Storage layout (default ~/.clawhub/):
    tasks.json          # All tasks
    agents.json         # All registered agents
    notifications.json  # All notifications

Design notes:
- One JSON array per collection, in insertion order
- Atomic writes using temp file + rename
- Suitable for a local board (hundreds of records, not millions)
"""

import json
import logging
import os
from pathlib import Path
from typing import Any

from clawcontrol.board.errors import PersistenceError

logger = logging.getLogger(__name__)


class JsonFilePersistence:
    """Stores one collection as a JSON array of records."""

    def __init__(self, path: Path):
        self.path = path

    def load_all(self) -> dict[str, dict[str, Any]]:
        """Load the file, returning an empty mapping if not found or unreadable."""
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"Error loading {self.path}: {e}")
            return {}

        # Older bridge files wrapped the array, e.g. {"tasks": [...]}
        if isinstance(data, dict):
            data = next((v for v in data.values() if isinstance(v, list)), [])

        records: dict[str, dict[str, Any]] = {}
        for item in data:
            if isinstance(item, dict) and item.get("id"):
                records[item["id"]] = item
        return records

    def save_all(self, records: dict[str, dict[str, Any]]) -> None:
        """Write all records atomically."""
        temp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(list(records.values()), f, indent=2, ensure_ascii=False)
            os.replace(temp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Error saving {self.path}: {e}")
            if temp_path.exists():
                temp_path.unlink()
            raise PersistenceError(f"Could not write {self.path}: {e}") from e


def collection_path(data_dir: Path, name: str) -> Path:
    """Path of a collection file inside the data directory."""
    return data_dir / f"{name}.json"
