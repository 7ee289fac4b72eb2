"""Browsing context the client half runs in.

Two key-value storage tiers (durable and session-scoped) and a navigator.
In-app browsers and private modes block storage at random, so every read
and write the login flow makes goes through the ``safe_*`` helpers, which
degrade to "nothing stored" instead of raising.
"""

import json
import logging
import sys
import webbrowser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol, Union

logger = logging.getLogger(__name__)


class StorageUnavailableError(Exception):
    """The storage tier refused the operation (blocked, quota, partitioned)."""


class KeyValueStorage(Protocol):
    def get_item(self, key: str) -> Optional[str]:
        ...

    def set_item(self, key: str, value: str) -> None:
        ...

    def remove_item(self, key: str) -> None:
        ...


class Navigator(Protocol):
    current_url: str

    def assign(self, url: str) -> None:
        """Full-page navigation that keeps the current entry in history."""
        ...

    def replace(self, url: str) -> None:
        """Full-page navigation that replaces the current history entry."""
        ...

    def alert(self, message: str) -> None:
        ...


# -----------------------------
# Storage tiers
# -----------------------------

class MemoryStorage:
    """Dict-backed storage. ``blocked=True`` makes every call raise."""

    def __init__(self, items: Optional[dict[str, str]] = None, blocked: bool = False):
        self._items: dict[str, str] = dict(items or {})
        self.blocked = blocked

    def _check(self) -> None:
        if self.blocked:
            raise StorageUnavailableError("storage is blocked")

    def get_item(self, key: str) -> Optional[str]:
        self._check()
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._check()
        self._items[key] = str(value)

    def remove_item(self, key: str) -> None:
        self._check()
        self._items.pop(key, None)

    def __len__(self) -> int:
        return len(self._items)


class JsonFileStorage:
    """Durable storage in a single JSON file. Survives process restarts."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def _load(self) -> dict[str, str]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except ValueError:
            logger.warning("Storage file %s is corrupt, starting empty", self.path)
            return {}
        except OSError as e:
            raise StorageUnavailableError(str(e)) from e
        return data if isinstance(data, dict) else {}

    def _save(self, items: dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(items), encoding="utf-8")
            tmp.replace(self.path)
        except OSError as e:
            raise StorageUnavailableError(str(e)) from e

    def get_item(self, key: str) -> Optional[str]:
        value = self._load().get(key)
        return None if value is None else str(value)

    def set_item(self, key: str, value: str) -> None:
        items = self._load()
        items[key] = str(value)
        self._save(items)

    def remove_item(self, key: str) -> None:
        items = self._load()
        if key in items:
            del items[key]
            self._save(items)


def safe_get(storage: KeyValueStorage, key: str) -> str:
    """Stripped value or ``""``. Never raises."""
    try:
        return str(storage.get_item(key) or "").strip()
    except StorageUnavailableError as e:
        logger.warning("Storage read of %s failed: %s", key, e)
        return ""


def safe_set(storage: KeyValueStorage, key: str, value: str) -> bool:
    try:
        storage.set_item(key, value)
    except StorageUnavailableError as e:
        logger.warning("Storage write of %s failed: %s", key, e)
        return False
    return True


def safe_remove(storage: KeyValueStorage, key: str) -> None:
    try:
        storage.remove_item(key)
    except StorageUnavailableError as e:
        logger.warning("Storage removal of %s failed: %s", key, e)


# -----------------------------
# Navigation
# -----------------------------

class WebbrowserNavigator:
    """Navigator for desktop/CLI hosts: opens pages in the system browser."""

    def __init__(self, current_url: str = ""):
        self.current_url = current_url

    def assign(self, url: str) -> None:
        logger.info("Opening %s", url.split("?", 1)[0])
        webbrowser.open(url)
        self.current_url = url

    def replace(self, url: str) -> None:
        # No history to rewrite outside a real page
        self.assign(url)

    def alert(self, message: str) -> None:
        print(message, file=sys.stderr)


@dataclass
class BrowsingContext:
    """Durable storage, session storage and navigation for one tab."""
    navigator: Navigator
    local: KeyValueStorage = field(default_factory=MemoryStorage)
    session: KeyValueStorage = field(default_factory=MemoryStorage)
