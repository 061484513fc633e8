"""
Offline write queue.

Persistence operations that could not reach a store are appended here and
replayed in their original order once connectivity returns. The queue is
kept as a JSON file (or purely in memory when no path is given).
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

from loguru import logger

from mastery_sprint.core.errors import CollaboratorUnavailableError
from mastery_sprint.core.models import utc_now

OP_APPEND_RECORD = "append_record"
OP_PUT_SPRINT = "put_sprint"
OP_PUT_SCHEDULE = "put_schedule"
OP_REANALYZE = "reanalyze"


@dataclass
class QueuedOperation:
    """One deferred persistence operation."""

    op: str
    user_id: str
    payload: dict[str, Any]
    op_id: str = field(default_factory=lambda: uuid4().hex)
    queued_at: str = field(default_factory=lambda: utc_now().isoformat())
    attempts: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> QueuedOperation:
        return cls(**data)


class OfflineQueue:
    """FIFO of deferred writes, optionally persisted to disk."""

    def __init__(self, path: Path | str | None = None):
        self.path = Path(path) if path else None
        self._items: list[QueuedOperation] = self._load()

    def __len__(self) -> int:
        return len(self._items)

    def _load(self) -> list[QueuedOperation]:
        if self.path is None or not self.path.exists():
            return []
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
            return [QueuedOperation.from_dict(item) for item in data]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.error("Offline queue at {} is unreadable: {}", self.path, e)
            raise

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump([item.to_dict() for item in self._items], f, indent=2)

    def enqueue(self, op: str, user_id: str, payload: dict[str, Any]) -> QueuedOperation:
        item = QueuedOperation(op=op, user_id=user_id, payload=payload)
        self._items.append(item)
        self._save()
        logger.info("Queued {} for {} (queue depth {})", op, user_id, len(self._items))
        return item

    def pending(self, user_id: str | None = None) -> list[QueuedOperation]:
        return [i for i in self._items if user_id is None or i.user_id == user_id]

    def discard_user(self, user_id: str) -> int:
        """Drop queued writes of an erased user."""
        before = len(self._items)
        self._items = [i for i in self._items if i.user_id != user_id]
        self._save()
        return before - len(self._items)

    async def replay(
        self,
        handler: Callable[[QueuedOperation], Awaitable[None]],
    ) -> list[QueuedOperation]:
        """
        Replay queued operations in original order.

        Stops at the first operation whose collaborator is still unavailable so
        later writes never overtake earlier ones.

        Returns:
            Operations that were applied
        """
        applied: list[QueuedOperation] = []
        while self._items:
            item = self._items[0]
            try:
                await handler(item)
            except CollaboratorUnavailableError:
                item.attempts += 1
                self._save()
                logger.warning(
                    "Replay halted at {} ({} attempts); {} operations remain",
                    item.op_id,
                    item.attempts,
                    len(self._items),
                )
                break
            self._items.pop(0)
            self._save()
            applied.append(item)
        if applied:
            logger.info("Replayed {} queued operations", len(applied))
        return applied
