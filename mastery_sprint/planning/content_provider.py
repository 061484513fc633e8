"""
Exercise content providers.

- HttpExerciseProvider: remote content service (including codebase-derived
  exercises), retried with exponential backoff
- StaticExerciseProvider: local exercise bank (JSON file or in-memory)
- FallbackExerciseProvider: primary provider, falling back to a secondary
  one when the primary stays unavailable
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import httpx
from loguru import logger

from config import Settings, get_settings
from mastery_sprint.core.errors import CollaboratorUnavailableError
from mastery_sprint.core.models import Exercise, ExerciseType
from mastery_sprint.stores.base import ExerciseProvider


def _matches(
    exercise: Exercise,
    topic: str,
    difficulty_range: tuple[int, int],
    types: list[ExerciseType],
) -> bool:
    low, high = difficulty_range
    return (
        exercise.topic == topic
        and low <= exercise.difficulty <= high
        and (not types or exercise.type in types)
    )


class HttpExerciseProvider:
    """HTTP client for the exercise content service."""

    def __init__(
        self,
        api_url: str,
        timeout_seconds: float = 10.0,
        retry_attempts: int = 3,
        backoff_seconds: float = 0.5,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize the provider.

        Args:
            api_url: Base URL of the content service
            timeout_seconds: Per-request timeout
            retry_attempts: Attempts before reporting the service unavailable
            backoff_seconds: First retry delay (doubles on each attempt)
            client: Pre-built client (tests inject a mock transport here)
        """
        self.api_url = api_url.rstrip("/")
        self.retry_attempts = retry_attempts
        self.backoff_seconds = backoff_seconds
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            follow_redirects=True,
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> HttpExerciseProvider:
        settings = settings or get_settings()
        if not settings.content_provider_url:
            raise ValueError("content_provider_url is not configured")
        return cls(
            settings.content_provider_url,
            timeout_seconds=settings.content_provider_timeout,
            retry_attempts=settings.retry_attempts,
            backoff_seconds=settings.retry_backoff_seconds,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def fetch_exercises(
        self,
        topic: str,
        difficulty_range: tuple[int, int],
        types: list[ExerciseType],
        limit: int,
    ) -> list[Exercise]:
        """
        Fetch exercises with retry logic.

        Raises:
            CollaboratorUnavailableError: service unreachable after every attempt,
                or it rejected the request
        """
        params: dict[str, Any] = {
            "topic": topic,
            "min_difficulty": difficulty_range[0],
            "max_difficulty": difficulty_range[1],
            "limit": limit,
        }
        if types:
            params["types"] = ",".join(t.value for t in types)

        last_error: Exception | None = None
        for attempt in range(self.retry_attempts):
            try:
                response = await self.client.get(f"{self.api_url}/exercises", params=params)
                response.raise_for_status()
                items = response.json()
                if isinstance(items, dict):
                    items = items.get("exercises", [])
                exercises = [Exercise.from_dict({"topic": topic, **item}) for item in items]
                return [e for e in exercises if _matches(e, topic, difficulty_range, types)][:limit]

            except httpx.HTTPStatusError as e:
                last_error = e
                if e.response.status_code < 500:
                    # Don't retry on 4xx client errors
                    logger.error("Content service rejected request: {}", e.response.status_code)
                    raise CollaboratorUnavailableError(
                        f"Content service returned {e.response.status_code}",
                        topic=topic,
                        status_code=e.response.status_code,
                    ) from e
                logger.warning(
                    "Content service error {} on attempt {}/{}",
                    e.response.status_code,
                    attempt + 1,
                    self.retry_attempts,
                )

            except (httpx.TimeoutException, httpx.RequestError) as e:
                last_error = e
                logger.warning(
                    "Content service request failed on attempt {}/{}: {}",
                    attempt + 1,
                    self.retry_attempts,
                    e,
                )

            except (ValueError, KeyError) as e:
                raise CollaboratorUnavailableError(
                    "Content service sent a malformed exercise payload",
                    topic=topic,
                ) from e

            if attempt < self.retry_attempts - 1:
                await asyncio.sleep(self.backoff_seconds * 2**attempt)

        logger.error("Content service unavailable after {} attempts: {}", self.retry_attempts, last_error)
        raise CollaboratorUnavailableError(
            f"Content service unavailable after {self.retry_attempts} attempts",
            topic=topic,
        )


class StaticExerciseProvider:
    """Serves exercises from a fixed bank."""

    def __init__(self, exercises: list[Exercise] | None = None):
        self.exercises = list(exercises or [])

    @classmethod
    def load(cls, path: str | Path) -> StaticExerciseProvider:
        """Load a JSON list of exercise objects."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if isinstance(data, dict):
            data = data.get("exercises", [])
        provider = cls([Exercise.from_dict(item) for item in data])
        logger.info("Loaded {} exercises from {}", len(provider.exercises), path)
        return provider

    def add(self, exercise: Exercise) -> None:
        self.exercises.append(exercise)

    async def fetch_exercises(
        self,
        topic: str,
        difficulty_range: tuple[int, int],
        types: list[ExerciseType],
        limit: int,
    ) -> list[Exercise]:
        matching = [e for e in self.exercises if _matches(e, topic, difficulty_range, types)]
        return sorted(matching, key=lambda e: (e.difficulty, e.id))[:limit]


class FallbackExerciseProvider:
    """Tries ``primary`` first; on CollaboratorUnavailableError uses ``secondary``."""

    def __init__(self, primary: ExerciseProvider, secondary: ExerciseProvider):
        self.primary = primary
        self.secondary = secondary

    async def fetch_exercises(
        self,
        topic: str,
        difficulty_range: tuple[int, int],
        types: list[ExerciseType],
        limit: int,
    ) -> list[Exercise]:
        try:
            return await self.primary.fetch_exercises(topic, difficulty_range, types, limit)
        except CollaboratorUnavailableError as e:
            logger.warning("Primary content provider unavailable for {}: {}; using fallback", topic, e)
        return await self.secondary.fetch_exercises(topic, difficulty_range, types, limit)
