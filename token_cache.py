# Filename: token_cache.py

import json
import logging
import os
import time
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("TokenCache")

LAST_WRITE_KEY = "last_write"


class PersistentCache:
    """
    Namespaced key/value store backed by a local JSON file.

    One last-write timestamp covers the whole namespace, so every key goes
    stale together. Storage problems never raise: reads fall back to absent
    and writes become no-ops.
    """

    def __init__(self, cache_file: str = "pulse_cache.json", namespace: str = "pulse",
                 ttl_seconds: float = 30 * 60, clock: Callable[[], float] = time.time):
        self.cache_file = cache_file
        self.namespace = namespace
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def _read_all(self) -> Dict[str, Any]:
        if not os.path.exists(self.cache_file):
            return {}
        try:
            with open(self.cache_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"[CACHE] Failed to read {self.cache_file}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: Dict[str, Any]) -> bool:
        tmp_path = f"{self.cache_file}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp_path, self.cache_file)
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"[CACHE] Failed to write {self.cache_file}: {e}")
            return False

    def save(self, key: str, value: Any) -> bool:
        data = self._read_all()
        data[self._key(key)] = value
        data[self._key(LAST_WRITE_KEY)] = self.clock()
        return self._write_all(data)

    def load(self, key: str) -> Optional[Any]:
        return self._read_all().get(self._key(key))

    def last_write(self) -> Optional[float]:
        value = self._read_all().get(self._key(LAST_WRITE_KEY))
        try:
            return float(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    def is_stale(self) -> bool:
        last_write = self.last_write()
        if last_write is None:
            return True
        return self.clock() - last_write > self.ttl_seconds

    def clear_all(self) -> None:
        data = self._read_all()
        prefix = f"{self.namespace}:"
        kept = {k: v for k, v in data.items() if not k.startswith(prefix)}
        if len(kept) != len(data):
            self._write_all(kept)
            logger.info(f"[CACHE] Cleared namespace '{self.namespace}'")
