"""Host key/value storage for settings and conversation history.

Every failure here degrades to a no-op: callers keep their in-memory state
and carry on.
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

SETTINGS_KEY = "perfetto-assistant-settings"
HISTORY_KEY = "perfetto-assistant-history"
SESSIONS_KEY = "perfetto-assistant-sessions"
PENDING_REMOTE_TRACE_KEY = "perfetto-assistant-pending-remote-trace"

DEFAULT_HOME = Path("~/.perfetto-assistant")


class KeyValueStore(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryKeyValueStore:
    """In-process store; values are kept as JSON text like the file store."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    def get(self, key: str) -> Any | None:
        raw = self._items.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding corrupt record %s", key)
            return None

    def set(self, key: str, value: Any) -> None:
        try:
            self._items[key] = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            logger.warning("Failed to serialize record %s: %s", key, exc)

    def remove(self, key: str) -> None:
        self._items.pop(key, None)


class FileKeyValueStore:
    """One JSON document per key under a directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser()

    def _path(self, key: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", key)
        return self.root / f"{safe}.json"

    def get(self, key: str) -> Any | None:
        path = self._path(key)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read %s: %s", path, exc)
            return None

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".json.tmp")
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(value, f, ensure_ascii=False, indent=2)
            os.replace(tmp, path)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Failed to write %s: %s", path, exc)

    def remove(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to remove %s: %s", key, exc)


def default_store_root() -> Path:
    return Path(os.getenv("PERFETTO_ASSISTANT_HOME", str(DEFAULT_HOME))).expanduser()
