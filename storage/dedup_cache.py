"""JSON-file-backed cache that suppresses repeat alerts inside a cooldown."""
from __future__ import annotations

import asyncio
import json
import logging
import math
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Optional

from constants import DEDUP_BUCKET_BPS, DEDUP_CACHE_PATH, DEDUP_RETENTION_SECONDS
from storage.models import NotificationRecord

logger = logging.getLogger(__name__)


def make_key(token: str, buy_venue: str, sell_venue: str, spread_bps: float, bucket_bps: int = DEDUP_BUCKET_BPS) -> str:
    """Coarse identity of an opportunity; spread is rounded half-up to the nearest bucket."""
    bucket = int(math.floor(spread_bps / bucket_bps + 0.5)) * bucket_bps
    return f"{token.upper()}-{buy_venue}-{sell_venue}-{bucket}"


class NotificationDedupCache:
    """Tracks when each opportunity key was last alerted.

    A key is stamped the first time it is checked outside its cooldown.
    Checks that report a duplicate never refresh the stamp, so a persistent
    opportunity re-alerts once per cooldown. ``release`` drops a stamp whose
    alert could not be delivered.
    """

    def __init__(
        self,
        path: Path | str = Path(DEDUP_CACHE_PATH),
        *,
        cooldown_seconds: float = 300.0,
        retention_seconds: float = DEDUP_RETENTION_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = Path(path)
        self.cooldown_seconds = cooldown_seconds
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._records: Dict[str, NotificationRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def get(self, key: str) -> Optional[NotificationRecord]:
        return self._records.get(key)

    def is_duplicate(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            record = self._records.get(key)
            if record is not None and record.age(now) < self.cooldown_seconds:
                return True
            self._records[key] = NotificationRecord(key=key, last_sent_at=now)
            return False

    def release(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)

    def prune(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, record in self._records.items() if record.age(now) > self.retention_seconds]
            for key in expired:
                del self._records[key]
        return len(expired)

    def load_sync(self) -> int:
        if not self.path.exists():
            return 0
        try:
            with self.path.open('r', encoding='utf-8') as handle:
                payload = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Could not read notification cache %s: %s", self.path, exc)
            return 0
        if not isinstance(payload, dict):
            logger.warning("Ignoring malformed notification cache %s", self.path)
            return 0

        loaded: Dict[str, NotificationRecord] = {}
        for key, stamp in payload.items():
            if isinstance(stamp, (int, float)) and not isinstance(stamp, bool):
                loaded[str(key)] = NotificationRecord(key=str(key), last_sent_at=float(stamp))
        with self._lock:
            self._records = loaded
        pruned = self.prune()
        return len(loaded) - pruned

    def save_sync(self) -> None:
        self.prune()
        with self._lock:
            payload = {key: record.last_sent_at for key, record in self._records.items()}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=self.path.name, suffix='.tmp', dir=self.path.parent)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
            os.replace(tmp_name, self.path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    async def load(self) -> int:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.load_sync)

    async def save(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.save_sync)
