# visit_planner/api/storage.py
"""Local persistent key-value store.

Plays the role of the browser's local storage for the planner: small JSON
documents addressed by a string key (``route-draft:<operator>``,
``geocode-cache:<operator>``, ...). Each key lives in its own file so a
corrupt document never takes the others down with it.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import threading
from typing import Any, Optional

from visit_planner.api.errors import CorruptEntry, StoreUnavailable

logger = logging.getLogger(__name__)


class LocalStore:
    """JSON-file backed key-value store rooted at ``data_dir``."""

    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        self._lock = threading.Lock()
        try:
            os.makedirs(data_dir, exist_ok=True)
            self.available = os.access(data_dir, os.W_OK)
        except OSError as e:
            logger.error(f"Local store directory {data_dir} is unusable: {e}")
            self.available = False

        if self.available:
            logger.info(f"Local store ready at {data_dir}")
        else:
            logger.warning(f"Local store at {data_dir} is not writable; persistence disabled")

    def _path_for(self, key: str) -> str:
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()
        return os.path.join(self.data_dir, f"{digest}.json")

    def _require_available(self) -> None:
        if not self.available:
            raise StoreUnavailable(f"Local store at {self.data_dir} is unavailable")

    def get(self, key: str) -> Optional[Any]:
        """Return the value stored under ``key`` or None.

        Raises:
            StoreUnavailable: the store cannot be used
            CorruptEntry: the stored document is not valid JSON
        """
        self._require_available()
        path = self._path_for(key)
        try:
            with open(path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            raise CorruptEntry(f"Stored value for '{key}' is corrupt: {e}") from e
        except OSError as e:
            raise StoreUnavailable(f"Could not read '{key}': {e}") from e

        if not isinstance(document, dict) or document.get("key") != key:
            raise CorruptEntry(f"Stored value for '{key}' has an unexpected layout")
        return document.get("value")

    def set(self, key: str, value: Any) -> None:
        """Store ``value`` (JSON serialisable) under ``key``, atomically."""
        self._require_available()
        path = self._path_for(key)
        payload = {"key": key, "value": value}
        with self._lock:
            tmp_path = None
            try:
                fd, tmp_path = tempfile.mkstemp(dir=self.data_dir, suffix=".tmp")
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, ensure_ascii=False)
                os.replace(tmp_path, path)
                tmp_path = None
            except OSError as e:
                raise StoreUnavailable(f"Could not write '{key}': {e}") from e
            finally:
                if tmp_path is not None and os.path.exists(tmp_path):
                    os.remove(tmp_path)
        logger.debug(f"Stored '{key}' in {path}")

    def remove(self, key: str) -> None:
        """Delete ``key``; a missing key is not an error."""
        self._require_available()
        with self._lock:
            try:
                os.remove(self._path_for(key))
            except FileNotFoundError:
                pass
            except OSError as e:
                raise StoreUnavailable(f"Could not remove '{key}': {e}") from e


__all__ = ["LocalStore"]
