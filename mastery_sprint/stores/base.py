"""
Collaborator interfaces.

The engine only ever talks to storage and content through these narrow
async contracts. Implementations raise CollaboratorUnavailableError when the
backing service cannot be reached, and VersionConflict when a conditional
mastery-model write loses a race.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from mastery_sprint.core.models import (
    ActivityRecord,
    Exercise,
    ExerciseType,
    MasteryModel,
    MasterySprint,
    RecallScheduleEntry,
    WeaknessRanking,
)


class MetricStore(Protocol):
    """Append-only store of time-stamped activity records."""

    async def append(self, record: ActivityRecord) -> bool:
        """Store a record. Returns False when the activity id was already stored."""
        ...

    async def query(
        self,
        user_id: str,
        topic: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ActivityRecord]:
        """Records for a user ordered by timestamp (then activity id)."""
        ...

    async def delete_user(self, user_id: str) -> int:
        """Erase every record of a user; returns the number removed."""
        ...


class DocumentStore(Protocol):
    """Keyed document store with conditional writes for mastery models."""

    async def get_model(self, user_id: str) -> MasteryModel | None: ...

    async def put_model(self, model: MasteryModel, expected_version: int) -> None:
        """
        Write ``model`` only if the stored version equals ``expected_version``
        (0 meaning "absent").

        Raises:
            VersionConflict: stored version differs
        """
        ...

    async def get_sprint(self, sprint_id: str) -> MasterySprint | None: ...

    async def put_sprint(self, sprint: MasterySprint) -> None: ...

    async def list_sprints(self, user_id: str) -> list[MasterySprint]: ...

    async def get_schedule(self, user_id: str, topic: str) -> RecallScheduleEntry | None: ...

    async def put_schedule(self, entry: RecallScheduleEntry) -> None: ...

    async def list_schedule(self, user_id: str) -> list[RecallScheduleEntry]: ...

    async def get_ranking(self, user_id: str) -> WeaknessRanking | None: ...

    async def put_ranking(self, ranking: WeaknessRanking) -> None: ...

    async def delete_user(self, user_id: str) -> int:
        """Erase every document owned by a user; returns the number removed."""
        ...


class ExerciseProvider(Protocol):
    """Source of exercise content (including codebase-derived exercises)."""

    async def fetch_exercises(
        self,
        topic: str,
        difficulty_range: tuple[int, int],
        types: list[ExerciseType],
        limit: int,
    ) -> list[Exercise]:
        """
        Return up to ``limit`` exercises.

        Raises:
            CollaboratorUnavailableError: provider unreachable (retryable)
        """
        ...
