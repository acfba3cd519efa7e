"""Key-value store used for accounts and the quota ledger (thread-safe, atomic)."""
from __future__ import annotations

import copy
import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from .errors import StorageFault

logger = logging.getLogger(__name__)

ACCOUNTS_KEY = "users"
LEDGER_KEY = "user_limits"


# -----------------------------
# Helpers
# -----------------------------
def _safe_key(name: str) -> str:
    # Keep it readable but filesystem-safe.
    s = re.sub(r"[^\w.\-@]+", "_", name.strip() or "default")
    return s[:128]


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


class KeyValueStore(Protocol):
    """``get`` returns None for absent keys; ``put`` raises StorageFault on failure."""

    def get(self, key: str) -> Optional[Any]: ...

    def put(self, key: str, value: Any) -> None: ...


def read_collection(store: KeyValueStore, key: str) -> Any:
    """Read a collection, defaulting absent keys to ``[]`` (accounts) or ``{}``."""
    value = store.get(key)
    if value is None:
        return [] if key == ACCOUNTS_KEY else {}
    return value


# -----------------------------
# JsonFileStore
# -----------------------------
class JsonFileStore:
    """One JSON document per key.

    Layout:
        data_dir/
          users.json        # accounts collection (list)
          user_limits.json  # quota ledger (dict keyed by identity)

    Writes go through a temp file and ``os.replace`` so readers never see a
    torn document. The lock only serializes file I/O; callers still do a
    plain read-modify-write on top of it.
    """

    def __init__(self, data_dir: str) -> None:
        self.root = Path(data_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    def _path(self, key: str) -> Path:
        return self.root / f"{_safe_key(key)}.json"

    def get(self, key: str) -> Optional[Any]:
        path = self._path(key)
        with self._lock:
            if not path.exists():
                return None
            try:
                with path.open("r", encoding="utf-8") as f:
                    return json.load(f)
            except ValueError:
                # Corruption fallback (bad JSON or bad UTF-8): keep a backup and start fresh.
                bad = path.with_suffix(".corrupt.json")
                logger.warning("Corrupt store document %s, moved to %s", path, bad)
                try:
                    path.rename(bad)
                except OSError:
                    logger.exception("Could not move corrupt document %s", path)
                return None
            except OSError as e:
                raise StorageFault(f"Failed to read {key!r}") from e

    def put(self, key: str, value: Any) -> None:
        try:
            text = json.dumps(value, ensure_ascii=False, indent=2)
        except (TypeError, ValueError) as e:
            raise StorageFault(f"Value for {key!r} is not JSON-serializable") from e
        with self._lock:
            try:
                _atomic_write_text(self._path(key), text)
            except OSError as e:
                raise StorageFault(f"Failed to write {key!r}") from e

    def keys(self) -> List[str]:
        return sorted(p.stem for p in self.root.glob("*.json") if not p.stem.endswith(".corrupt"))


class InMemoryStore:
    """Process-local store. Values are deep-copied in and out like a real KV."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._data: Dict[str, Any] = copy.deepcopy(initial or {})
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            if key not in self._data:
                return None
            return copy.deepcopy(self._data[key])

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def keys(self) -> List[str]:
        return sorted(self._data)


def create_from_config(cfg: Dict[str, Any]) -> KeyValueStore:
    """Build the configured store (``store.backend``: ``file`` | ``memory``)."""
    store_cfg = (cfg or {}).get("store", {}) if isinstance(cfg, dict) else {}
    backend = str(store_cfg.get("backend", "file")).strip().lower()
    if backend == "memory":
        return InMemoryStore()
    if backend != "file":
        raise RuntimeError(f"Unknown store backend: {backend!r}")
    return JsonFileStore(store_cfg.get("data_dir") or "data")
