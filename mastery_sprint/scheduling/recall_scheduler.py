"""
Spaced-Repetition Scheduler.

Per-(user, topic) recall interval state machine:

    first exposure      -> interval = 1 day
    drill >= threshold  -> interval *= growth, consecutive_successes += 1
    drill <  threshold  -> interval *= 0.5 (floor 1 day), consecutive_successes = 0
    next_due_at         =  completion time + interval

Growth rises with both accuracy and streak:

    growth = base + accuracy_growth * (accuracy - threshold)
                  + streak_growth * min(consecutive_successes, streak_cap)

Low retention forces an extra drill through a separate override due time, so
the regular interval state is never consumed or reset by it. Topics whose
mastery has stayed above the dormancy threshold for the dormancy period stop
generating regular drills. Entries are only removed by user erasure.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from loguru import logger

from config import Settings, get_settings
from mastery_sprint.core.errors import CollaboratorUnavailableError, InputValidationError
from mastery_sprint.core.models import RecallDrill, RecallScheduleEntry, as_utc, utc_now
from mastery_sprint.stores.base import DocumentStore
from mastery_sprint.stores.offline_queue import OP_PUT_SCHEDULE, OfflineQueue


class RecallScheduler:
    """Drives RecallScheduleEntry transitions and lists due drills."""

    def __init__(
        self,
        document_store: DocumentStore,
        settings: Settings | None = None,
        offline_queue: OfflineQueue | None = None,
    ):
        self.document_store = document_store
        self.settings = settings or get_settings()
        self.config = self.settings.get_scheduler_config()
        self.offline_queue = offline_queue

    async def _save(self, entry: RecallScheduleEntry) -> None:
        try:
            await self.document_store.put_schedule(entry)
        except CollaboratorUnavailableError:
            if self.offline_queue is None:
                raise
            self.offline_queue.enqueue(OP_PUT_SCHEDULE, entry.user_id, entry.to_dict())

    # =========================================================================
    # INTERVAL POLICY
    # =========================================================================

    def growth_factor(self, accuracy: float, consecutive_successes: int) -> float:
        """Multiplier applied to the interval after a successful drill (always > 1)."""
        streak = min(consecutive_successes, int(self.config["streak_cap"]))
        return (
            self.config["base_growth"]
            + self.config["accuracy_growth"] * max(0.0, accuracy - self.config["success_threshold"])
            + self.config["streak_growth"] * streak
        )

    def next_interval(self, entry: RecallScheduleEntry, accuracy: float) -> tuple[float, int]:
        """New (interval_days, consecutive_successes) after a drill."""
        if accuracy >= self.config["success_threshold"]:
            interval = entry.current_interval_days * self.growth_factor(
                accuracy, entry.consecutive_successes
            )
            return min(interval, self.config["max_interval"]), entry.consecutive_successes + 1

        interval = max(
            self.config["initial_interval"],
            entry.current_interval_days * self.config["failure_factor"],
        )
        return interval, 0

    def new_entry(self, user_id: str, topic: str, at: datetime) -> RecallScheduleEntry:
        interval = self.config["initial_interval"]
        return RecallScheduleEntry(
            user_id=user_id,
            topic=topic,
            next_due_at=as_utc(at) + timedelta(days=interval),
            current_interval_days=interval,
        )

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def ensure_entry(
        self,
        user_id: str,
        topic: str,
        at: datetime | None = None,
    ) -> RecallScheduleEntry:
        """Existing entry, or a freshly created one on first exposure."""
        entry = await self.document_store.get_schedule(user_id, topic)
        if entry is None:
            entry = self.new_entry(user_id, topic, at or utc_now())
            await self._save(entry)
            logger.debug("Created recall schedule for {}/{}", user_id, topic)
        return entry

    async def record_drill(
        self,
        user_id: str,
        topic: str,
        accuracy: float,
        completed_at: datetime | None = None,
    ) -> RecallScheduleEntry:
        """
        Apply a completed recall drill.

        Args:
            user_id: Learner
            topic: Drilled topic
            accuracy: Drill accuracy (0-100)
            completed_at: Completion time (defaults to now)

        Returns:
            Updated schedule entry (already persisted)
        """
        if not 0 <= accuracy <= 100:
            raise InputValidationError(
                "Drill accuracy out of range",
                field_errors={"accuracy": "must be between 0 and 100"},
            )
        completed_at = as_utc(completed_at or utc_now())
        entry = await self.document_store.get_schedule(user_id, topic)
        if entry is None:
            entry = self.new_entry(user_id, topic, completed_at)

        interval, successes = self.next_interval(entry, accuracy)
        entry.current_interval_days = interval
        entry.consecutive_successes = successes
        entry.last_accuracy = accuracy
        entry.next_due_at = completed_at + timedelta(days=interval)
        # A completed drill satisfies any pending forced drill
        if entry.override_due_at is not None and as_utc(entry.override_due_at) <= completed_at:
            entry.override_due_at = None
            entry.override_reason = None

        await self._save(entry)
        logger.info(
            "Recall {}/{}: accuracy={:.0f} interval={:.2f}d streak={}",
            user_id,
            topic,
            accuracy,
            interval,
            successes,
        )
        return entry

    async def force_drill(
        self,
        user_id: str,
        topic: str,
        reason: str,
        at: datetime | None = None,
    ) -> RecallScheduleEntry:
        """
        Schedule an extra drill at ``at`` without touching interval state.

        An earlier pending override is kept.
        """
        at = as_utc(at or utc_now())
        entry = await self.document_store.get_schedule(user_id, topic)
        if entry is None:
            entry = self.new_entry(user_id, topic, at)
        if entry.override_due_at is None or as_utc(entry.override_due_at) > at:
            entry.override_due_at = at
        entry.override_reason = reason
        await self._save(entry)
        logger.info("Forced recall drill for {}/{}: {}", user_id, topic, reason)
        return entry

    async def observe_mastery(
        self,
        user_id: str,
        topic: str,
        mastery_level: float,
        at: datetime | None = None,
    ) -> RecallScheduleEntry | None:
        """Track how long a topic has stayed above the dormancy threshold."""
        entry = await self.document_store.get_schedule(user_id, topic)
        if entry is None:
            return None
        at = as_utc(at or utc_now())
        if mastery_level >= self.config["dormancy_mastery"]:
            if entry.mastered_since is not None:
                return entry
            entry.mastered_since = at
        elif entry.mastered_since is None:
            return entry
        else:
            entry.mastered_since = None
        await self._save(entry)
        return entry

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def due_drills(self, user_id: str, now: datetime | None = None) -> list[RecallDrill]:
        """
        Drills due at ``now``: every pending forced drill plus regular drills
        of non-dormant topics, earliest first.
        """
        now = as_utc(now or utc_now())
        drills = []
        for entry in await self.document_store.list_schedule(user_id):
            if entry.override_due_at is not None and as_utc(entry.override_due_at) <= now:
                drills.append(
                    RecallDrill(
                        topic=entry.topic,
                        due_at=as_utc(entry.override_due_at),
                        interval_days=entry.current_interval_days,
                        forced=True,
                        reason=entry.override_reason,
                    )
                )
            elif entry.is_dormant(now, self.config["dormancy_days"]):
                continue
            elif as_utc(entry.next_due_at) <= now:
                drills.append(
                    RecallDrill(
                        topic=entry.topic,
                        due_at=as_utc(entry.next_due_at),
                        interval_days=entry.current_interval_days,
                    )
                )
        return sorted(drills, key=lambda d: (d.due_at, d.topic))
