# payroll_auth/client/storage.py
import json
import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol

from loguru import logger

Clock = Callable[[], float]


class KeyValueStore(Protocol):
    """
    Where the client keeps session and ticket material between runs.

    ``expires_at`` is a POSIX timestamp; an entry past it reads as absent.
    """

    def set(self, key: str, value: Any, expires_at: Optional[float] = None) -> None: ...

    def get(self, key: str) -> Optional[Any]: ...

    def delete(self, key: str) -> None: ...


def _is_live(entry: Dict[str, Any], now: float) -> bool:
    expires_at = entry.get("expires_at")
    return expires_at is None or expires_at > now


class MemoryStore:
    """Process-local store; lost when the client exits."""

    def __init__(self, clock: Clock = time.time):
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._clock = clock

    def set(self, key: str, value: Any, expires_at: Optional[float] = None) -> None:
        self._entries[key] = {"value": value, "expires_at": expires_at}

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not _is_live(entry, self._clock()):
            del self._entries[key]
            return None
        return entry["value"]

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)


class FileStore:
    """JSON file store; survives restarts the way browser cookies survive reloads."""

    def __init__(self, path: Path, clock: Clock = time.time):
        self.path = Path(path)
        self._clock = clock

    def _read(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Credential file {self.path} unreadable, starting empty: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, Dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(data, f)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, self.path)

    def set(self, key: str, value: Any, expires_at: Optional[float] = None) -> None:
        data = self._read()
        data[key] = {"value": value, "expires_at": expires_at}
        self._write(data)

    def get(self, key: str) -> Optional[Any]:
        data = self._read()
        entry = data.get(key)
        if entry is None:
            return None
        if not _is_live(entry, self._clock()):
            del data[key]
            self._write(data)
            return None
        return entry.get("value")

    def delete(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)
