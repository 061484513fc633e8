"""
In-memory store implementations.

Used by tests and by embedded callers that do not need durability. Documents
are kept as serialized dicts so callers never share mutable state with the
store.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime

from mastery_sprint.core.errors import VersionConflict
from mastery_sprint.core.models import (
    ActivityRecord,
    MasteryModel,
    MasterySprint,
    RecallScheduleEntry,
    WeaknessRanking,
    as_utc,
)


class InMemoryMetricStore:
    """Metric store backed by per-user lists."""

    def __init__(self):
        self._records: dict[str, dict[str, ActivityRecord]] = defaultdict(dict)

    async def append(self, record: ActivityRecord) -> bool:
        user_records = self._records[record.user_id]
        if record.activity_id in user_records:
            return False
        user_records[record.activity_id] = record
        return True

    async def query(
        self,
        user_id: str,
        topic: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ActivityRecord]:
        records = [
            r for r in self._records.get(user_id, {}).values()
            if (topic is None or r.topic == topic)
            and (start is None or as_utc(r.timestamp) >= as_utc(start))
            and (end is None or as_utc(r.timestamp) <= as_utc(end))
        ]
        return sorted(records, key=lambda r: (as_utc(r.timestamp), r.activity_id))

    async def delete_user(self, user_id: str) -> int:
        return len(self._records.pop(user_id, {}))


class InMemoryDocumentStore:
    """Document store with conditional mastery-model writes."""

    def __init__(self):
        self._models: dict[str, dict] = {}
        self._sprints: dict[str, dict] = {}
        self._schedule: dict[tuple[str, str], dict] = {}
        self._rankings: dict[str, dict] = {}

    async def get_model(self, user_id: str) -> MasteryModel | None:
        data = self._models.get(user_id)
        return MasteryModel.from_dict(data) if data else None

    async def put_model(self, model: MasteryModel, expected_version: int) -> None:
        current = self._models.get(model.user_id)
        current_version = current["version"] if current else 0
        if current_version != expected_version:
            raise VersionConflict(model.user_id, expected_version, current_version)
        self._models[model.user_id] = model.to_dict()

    async def get_sprint(self, sprint_id: str) -> MasterySprint | None:
        data = self._sprints.get(sprint_id)
        return MasterySprint.from_dict(data) if data else None

    async def put_sprint(self, sprint: MasterySprint) -> None:
        self._sprints[sprint.sprint_id] = sprint.to_dict()

    async def list_sprints(self, user_id: str) -> list[MasterySprint]:
        sprints = [
            MasterySprint.from_dict(data)
            for data in self._sprints.values()
            if data["user_id"] == user_id
        ]
        return sorted(sprints, key=lambda s: s.created_at)

    async def get_schedule(self, user_id: str, topic: str) -> RecallScheduleEntry | None:
        data = self._schedule.get((user_id, topic))
        return RecallScheduleEntry.from_dict(data) if data else None

    async def put_schedule(self, entry: RecallScheduleEntry) -> None:
        self._schedule[(entry.user_id, entry.topic)] = entry.to_dict()

    async def list_schedule(self, user_id: str) -> list[RecallScheduleEntry]:
        return [
            RecallScheduleEntry.from_dict(data)
            for (owner, _), data in sorted(self._schedule.items())
            if owner == user_id
        ]

    async def get_ranking(self, user_id: str) -> WeaknessRanking | None:
        data = self._rankings.get(user_id)
        return WeaknessRanking.from_dict(data) if data else None

    async def put_ranking(self, ranking: WeaknessRanking) -> None:
        self._rankings[ranking.user_id] = ranking.to_dict()

    async def delete_user(self, user_id: str) -> int:
        removed = 0
        if self._models.pop(user_id, None) is not None:
            removed += 1
        if self._rankings.pop(user_id, None) is not None:
            removed += 1
        for sprint_id in [k for k, v in self._sprints.items() if v["user_id"] == user_id]:
            del self._sprints[sprint_id]
            removed += 1
        for key in [k for k in self._schedule if k[0] == user_id]:
            del self._schedule[key]
            removed += 1
        return removed
