"""Dataclasses representing persisted notification state."""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class NotificationRecord:
    key: str
    last_sent_at: float

    def age(self, now: float) -> float:
        return now - self.last_sent_at
