"""
SQLAlchemy-backed metric and document stores.

Both stores use the synchronous ORM inside a transactional session scope and
move each call off the event loop with ``asyncio.to_thread``. Connection
failures surface as CollaboratorUnavailableError so the engine can retry or
queue the write.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Generator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from loguru import logger
from sqlalchemy import Engine, create_engine, delete, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from mastery_sprint.core.errors import CollaboratorUnavailableError, VersionConflict
from mastery_sprint.core.models import (
    ActivityMetrics,
    ActivityRecord,
    ActivityType,
    MasteryModel,
    MasterySprint,
    RecallScheduleEntry,
    WeaknessRanking,
    as_utc,
)
from mastery_sprint.stores.orm import ActivityRecordRow, Base, DocumentRow

T = TypeVar("T")

KIND_MODEL = "model"
KIND_SPRINT = "sprint"
KIND_SCHEDULE = "schedule"
KIND_RANKING = "ranking"


def create_store_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine, preparing the directory of file-based SQLite databases."""
    connect_args: dict[str, Any] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        db_path = database_url.split("///", 1)[-1]
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(database_url, echo=echo, pool_pre_ping=True, connect_args=connect_args)


def init_db(engine: Engine) -> None:
    """Initialize database tables."""
    Base.metadata.create_all(bind=engine)
    logger.info("Store tables initialized")


class _SqlStore:
    def __init__(self, engine: Engine):
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    @contextmanager
    def _session_scope(self) -> Generator[Session, None, None]:
        """Provide a transactional scope around a series of operations."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:  # Intentionally broad - rollback on any error before re-raising
            session.rollback()
            raise
        finally:
            session.close()

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except OperationalError as e:
            logger.warning("Store unavailable: {}", e)
            raise CollaboratorUnavailableError("Store unavailable", cause=str(e)) from e


class SqlMetricStore(_SqlStore):
    """Metric store persisted in the ``activity_records`` table."""

    async def append(self, record: ActivityRecord) -> bool:
        return await self._run(self._append, record)

    async def query(
        self,
        user_id: str,
        topic: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ActivityRecord]:
        return await self._run(self._query, user_id, topic, start, end)

    async def delete_user(self, user_id: str) -> int:
        return await self._run(self._delete_user, user_id)

    def _append(self, record: ActivityRecord) -> bool:
        try:
            with self._session_scope() as session:
                session.add(
                    ActivityRecordRow(
                        user_id=record.user_id,
                        activity_id=record.activity_id,
                        activity_type=record.activity_type.value,
                        topic=record.topic,
                        content_type=record.content_type,
                        timestamp=as_utc(record.timestamp),
                        speed=record.metrics.speed,
                        accuracy=record.metrics.accuracy,
                        completion_rate=record.metrics.completion_rate,
                        difficulty=record.difficulty,
                    )
                )
        except IntegrityError:
            logger.debug("Duplicate activity {} for {}", record.activity_id, record.user_id)
            return False
        return True

    def _query(
        self,
        user_id: str,
        topic: str | None,
        start: datetime | None,
        end: datetime | None,
    ) -> list[ActivityRecord]:
        stmt = select(ActivityRecordRow).where(ActivityRecordRow.user_id == user_id)
        if topic is not None:
            stmt = stmt.where(ActivityRecordRow.topic == topic)
        if start is not None:
            stmt = stmt.where(ActivityRecordRow.timestamp >= as_utc(start))
        if end is not None:
            stmt = stmt.where(ActivityRecordRow.timestamp <= as_utc(end))
        stmt = stmt.order_by(ActivityRecordRow.timestamp, ActivityRecordRow.activity_id)

        with self._session_scope() as session:
            return [self._to_record(row) for row in session.scalars(stmt)]

    def _delete_user(self, user_id: str) -> int:
        with self._session_scope() as session:
            result = session.execute(
                delete(ActivityRecordRow).where(ActivityRecordRow.user_id == user_id)
            )
            return result.rowcount or 0

    @staticmethod
    def _to_record(row: ActivityRecordRow) -> ActivityRecord:
        return ActivityRecord(
            user_id=row.user_id,
            activity_id=row.activity_id,
            activity_type=ActivityType(row.activity_type),
            topic=row.topic,
            content_type=row.content_type,
            timestamp=as_utc(row.timestamp),
            metrics=ActivityMetrics(
                speed=row.speed,
                accuracy=row.accuracy,
                completion_rate=row.completion_rate,
            ),
            difficulty=row.difficulty,
        )


class SqlDocumentStore(_SqlStore):
    """Document store persisted in the ``documents`` table."""

    async def get_model(self, user_id: str) -> MasteryModel | None:
        data = await self._run(self._get, KIND_MODEL, user_id)
        return MasteryModel.from_dict(data) if data else None

    async def put_model(self, model: MasteryModel, expected_version: int) -> None:
        await self._run(self._put_model, model, expected_version)

    async def get_sprint(self, sprint_id: str) -> MasterySprint | None:
        data = await self._run(self._get, KIND_SPRINT, sprint_id)
        return MasterySprint.from_dict(data) if data else None

    async def put_sprint(self, sprint: MasterySprint) -> None:
        await self._run(self._upsert, KIND_SPRINT, sprint.sprint_id, sprint.user_id, sprint.to_dict())

    async def list_sprints(self, user_id: str) -> list[MasterySprint]:
        rows = await self._run(self._list, KIND_SPRINT, user_id)
        return sorted((MasterySprint.from_dict(d) for d in rows), key=lambda s: s.created_at)

    async def get_schedule(self, user_id: str, topic: str) -> RecallScheduleEntry | None:
        data = await self._run(self._get, KIND_SCHEDULE, self._schedule_key(user_id, topic))
        return RecallScheduleEntry.from_dict(data) if data else None

    async def put_schedule(self, entry: RecallScheduleEntry) -> None:
        await self._run(
            self._upsert,
            KIND_SCHEDULE,
            self._schedule_key(entry.user_id, entry.topic),
            entry.user_id,
            entry.to_dict(),
        )

    async def list_schedule(self, user_id: str) -> list[RecallScheduleEntry]:
        rows = await self._run(self._list, KIND_SCHEDULE, user_id)
        return sorted((RecallScheduleEntry.from_dict(d) for d in rows), key=lambda e: e.topic)

    async def get_ranking(self, user_id: str) -> WeaknessRanking | None:
        data = await self._run(self._get, KIND_RANKING, user_id)
        return WeaknessRanking.from_dict(data) if data else None

    async def put_ranking(self, ranking: WeaknessRanking) -> None:
        await self._run(self._upsert, KIND_RANKING, ranking.user_id, ranking.user_id, ranking.to_dict())

    async def delete_user(self, user_id: str) -> int:
        return await self._run(self._delete_user, user_id)

    @staticmethod
    def _schedule_key(user_id: str, topic: str) -> str:
        return f"{user_id}:{topic}"

    def _get(self, kind: str, key: str) -> dict | None:
        with self._session_scope() as session:
            row = session.get(DocumentRow, (kind, key))
            return dict(row.payload) if row else None

    def _list(self, kind: str, user_id: str) -> list[dict]:
        stmt = select(DocumentRow).where(DocumentRow.kind == kind, DocumentRow.user_id == user_id)
        with self._session_scope() as session:
            return [dict(row.payload) for row in session.scalars(stmt)]

    def _upsert(self, kind: str, key: str, user_id: str, payload: dict) -> None:
        with self._session_scope() as session:
            session.merge(DocumentRow(kind=kind, key=key, user_id=user_id, version=0, payload=payload))

    def _put_model(self, model: MasteryModel, expected_version: int) -> None:
        payload = model.to_dict()
        with self._session_scope() as session:
            if expected_version == 0:
                existing = session.get(DocumentRow, (KIND_MODEL, model.user_id))
                if existing is not None:
                    raise VersionConflict(model.user_id, 0, existing.version)
                session.add(
                    DocumentRow(
                        kind=KIND_MODEL,
                        key=model.user_id,
                        user_id=model.user_id,
                        version=model.version,
                        payload=payload,
                    )
                )
                try:
                    session.flush()
                except IntegrityError as e:
                    raise VersionConflict(model.user_id, 0, -1) from e
                return

            result = session.execute(
                update(DocumentRow)
                .where(
                    DocumentRow.kind == KIND_MODEL,
                    DocumentRow.key == model.user_id,
                    DocumentRow.version == expected_version,
                )
                .values(version=model.version, payload=payload)
            )
            if result.rowcount != 1:
                current = session.get(DocumentRow, (KIND_MODEL, model.user_id))
                raise VersionConflict(
                    model.user_id, expected_version, current.version if current else 0
                )

    def _delete_user(self, user_id: str) -> int:
        with self._session_scope() as session:
            result = session.execute(delete(DocumentRow).where(DocumentRow.user_id == user_id))
            return result.rowcount or 0
