# features/override_store.py
from __future__ import annotations

import json
import os
from collections.abc import Iterator, MutableMapping

import structlog

from config import settings

logger = structlog.get_logger(__name__)

DEFAULT_OVERRIDES_FILE = os.path.join(settings.BASE_OUTPUT_DIR, "feature_overrides.json")


class JsonOverrideStore(MutableMapping[str, bool]):
    """Feature overrides persisted to a JSON file, written on every change."""

    def __init__(self, path: str = DEFAULT_OVERRIDES_FILE) -> None:
        self.path = path
        self._data: dict[str, bool] = {}
        if os.path.exists(path):
            try:
                with open(path, encoding="utf-8") as f:
                    loaded = json.load(f)
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Ignoring unreadable overrides file", path=path, error=str(exc))
            else:
                if isinstance(loaded, dict):
                    self._data = {str(k): bool(v) for k, v in loaded.items()}

    def _save(self) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self._data, f, indent=2, sort_keys=True)
        os.replace(tmp_path, self.path)

    def __getitem__(self, key: str) -> bool:
        return self._data[key]

    def __setitem__(self, key: str, value: bool) -> None:
        self._data[key] = bool(value)
        self._save()

    def __delitem__(self, key: str) -> None:
        del self._data[key]
        self._save()

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def clear(self) -> None:
        self._data.clear()
        self._save()
